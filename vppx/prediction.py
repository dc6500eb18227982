from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping, Protocol

from .config import load_app_config
from .models import ContextSnapshot


_LOGGER = logging.getLogger("vppx.prediction")


class PredictionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Prediction:
    bid_price: float
    bid_quantity: float
    confidence: float


class PredictionProvider(Protocol):
    def predict(self, snapshot: ContextSnapshot) -> Prediction | Mapping[str, Any]:
        ...


_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "bid_price": ("bid_price", "bidPrice"),
    "bid_quantity": ("bid_quantity", "bidQuantity"),
    "confidence": ("confidence",),
}


def _finite(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PredictionError(f"prediction {name} must be a number, got {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise PredictionError(f"prediction {name} must be finite, got {value!r}")
    return number


def coerce_prediction(raw: Any) -> Prediction:
    """Normalize a provider's output into a ``Prediction``.

    Accepts a ``Prediction`` or a plain record keyed ``bidPrice``/``bidQuantity``/
    ``confidence`` (snake_case also works). Anything else raises ``PredictionError``.
    """
    if isinstance(raw, Prediction):
        values = {"bid_price": raw.bid_price, "bid_quantity": raw.bid_quantity, "confidence": raw.confidence}
    elif isinstance(raw, Mapping):
        values = {}
        for name, keys in _FIELD_ALIASES.items():
            found = next((raw[key] for key in keys if key in raw), None)
            if found is None:
                raise PredictionError(f"prediction record missing {name}")
            values[name] = found
    else:
        raise PredictionError(f"unsupported prediction payload: {type(raw).__name__}")

    bid_price = _finite("bid_price", values["bid_price"])
    bid_quantity = _finite("bid_quantity", values["bid_quantity"])
    confidence = _finite("confidence", values["confidence"])
    if bid_price <= 0:
        raise PredictionError(f"prediction bid_price must be positive, got {bid_price}")
    if bid_quantity < 0:
        raise PredictionError(f"prediction bid_quantity must be >= 0, got {bid_quantity}")
    if not 0.0 <= confidence <= 1.0:
        raise PredictionError(f"prediction confidence must be within [0, 1], got {confidence}")
    return Prediction(bid_price=bid_price, bid_quantity=bid_quantity, confidence=confidence)


class FixturePredictionProvider:
    """Deterministic stand-in for the model service.

    Bids ``price_factor`` of the market price for ``capacity_ratio`` of the
    available capacity, always with the same confidence.
    """

    def __init__(
        self,
        *,
        price_factor: float = 0.98,
        capacity_ratio: float = 0.8,
        confidence: float = 0.85,
    ) -> None:
        self._price_factor = float(price_factor)
        self._capacity_ratio = float(capacity_ratio)
        self._confidence = float(confidence)

    def predict(self, snapshot: ContextSnapshot) -> Prediction:
        if snapshot.market.price <= 0:
            _LOGGER.debug("fixture prediction refused price=%s", snapshot.market.price)
            raise PredictionError("market price must be positive")
        return Prediction(
            bid_price=snapshot.market.price * self._price_factor,
            bid_quantity=snapshot.resource.available_capacity * self._capacity_ratio,
            confidence=self._confidence,
        )


def build_prediction_provider_from_config() -> PredictionProvider | None:
    cfg = load_app_config().providers
    if cfg.prediction == "fixture":
        _LOGGER.info(
            "prediction provider=fixture price_factor=%s capacity_ratio=%s confidence=%s",
            cfg.fixture_price_factor,
            cfg.fixture_capacity_ratio,
            cfg.fixture_confidence,
        )
        return FixturePredictionProvider(
            price_factor=cfg.fixture_price_factor,
            capacity_ratio=cfg.fixture_capacity_ratio,
            confidence=cfg.fixture_confidence,
        )
    _LOGGER.info("prediction provider disabled; ai_driven strategies degrade to rule actions only")
    return None


_PREDICTION_PROVIDER_LOCK = Lock()
_PREDICTION_PROVIDER: PredictionProvider | None = None
_PREDICTION_PROVIDER_LOADED = False


def get_shared_prediction_provider() -> PredictionProvider | None:
    global _PREDICTION_PROVIDER, _PREDICTION_PROVIDER_LOADED
    with _PREDICTION_PROVIDER_LOCK:
        if not _PREDICTION_PROVIDER_LOADED:
            _PREDICTION_PROVIDER = build_prediction_provider_from_config()
            _PREDICTION_PROVIDER_LOADED = True
        return _PREDICTION_PROVIDER


def reset_shared_prediction_provider() -> None:
    global _PREDICTION_PROVIDER, _PREDICTION_PROVIDER_LOADED
    with _PREDICTION_PROVIDER_LOCK:
        _PREDICTION_PROVIDER = None
        _PREDICTION_PROVIDER_LOADED = False
