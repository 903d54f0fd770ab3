"""Post-commit fan-out of ``subscription.changed`` events.

Listeners run in-process (open sessions refresh their cached plan); when
``NOTIFY_WEBHOOK_URL`` is configured the event is also POSTed there. Delivery
is best-effort: failures are logged and never propagate to the transition.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List

import httpx

from core.config import load_billing_settings
from core.logging import get_logger
from services import billing_metrics

if TYPE_CHECKING:  # pragma: no cover
    from services.subscription_lifecycle import TransitionResult

logger = get_logger(__name__)

Listener = Callable[[Dict[str, Any]], None]

_LISTENERS: List[Listener] = []
_LOCK = threading.Lock()
_WEBHOOK_TIMEOUT_SECONDS = 3.0


def subscribe(listener: Listener) -> Callable[[], None]:
    """Register ``listener``; returns a callable that removes it again."""

    with _LOCK:
        _LISTENERS.append(listener)

    def _unsubscribe() -> None:
        with _LOCK:
            if listener in _LISTENERS:
                _LISTENERS.remove(listener)

    return _unsubscribe


def build_event(result: "TransitionResult") -> Dict[str, Any]:
    return {"type": "subscription.changed", "data": result.to_dict()}


def _post_webhook(url: str, event: Dict[str, Any]) -> None:
    try:
        response = httpx.post(url, json=event, timeout=_WEBHOOK_TIMEOUT_SECONDS)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "Subscription change webhook delivery failed: %s",
            exc,
            extra={"account_id": event["data"].get("accountId")},
        )


def publish(result: "TransitionResult") -> None:
    event = build_event(result)
    with _LOCK:
        listeners = list(_LISTENERS)
    for listener in listeners:
        try:
            listener(event)
        except Exception:  # pragma: no cover - listener bugs must not undo a committed transition
            logger.exception("Subscription change listener failed.")

    billing_metrics.observe_transition(result.transition)

    url = load_billing_settings().notify_webhook_url
    if url:
        _post_webhook(url, event)
    logger.info(
        "Published subscription change.",
        extra={"account_id": result.account_id, "transition": result.transition},
    )


def reset_listeners_for_tests() -> None:
    with _LOCK:
        _LISTENERS.clear()


__all__ = ["build_event", "publish", "reset_listeners_for_tests", "subscribe"]
