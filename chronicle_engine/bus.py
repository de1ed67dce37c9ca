"""Check bus — publish point for skill checks and moderation alerts.

Topics:
  intent.checkRequest   — check requests for an external resolution engine
  event.checkResolved   — resolutions coming back from that engine
  event.checkVetoed     — checks refused by the resolution engine on safety grounds
  admin.alert           — safety escalations for the moderation queue

Publishing is fire-and-forget: the turn never waits for a resolution.
Listeners run synchronously in subscription order. A listener that raises
propagates to the publisher.

The turn engine only depends on the two narrow protocols below, so any
queue client can stand in for the in-process bus.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from chronicle_engine.models import (
    CheckRequestEnvelope,
    CheckResolution,
    CheckVeto,
    ModerationAlert,
)

logger = logging.getLogger(__name__)

CHECK_REQUEST_TOPIC = "intent.checkRequest"
CHECK_RESOLVED_TOPIC = "event.checkResolved"
CHECK_VETOED_TOPIC = "event.checkVetoed"
ADMIN_ALERT_TOPIC = "admin.alert"


class CheckDispatcher(Protocol):
    def dispatch(self, envelope: CheckRequestEnvelope) -> None: ...


class ModerationQueue(Protocol):
    def escalate(self, alert: ModerationAlert) -> None: ...


class CheckBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[Any], None]]] = defaultdict(list)
        self.published: dict[str, list[Any]] = defaultdict(list)

    def _emit(self, topic: str, payload: Any) -> None:
        self.published[topic].append(payload)
        for listener in list(self._listeners[topic]):
            listener(payload)

    def subscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        self._listeners[topic].append(listener)

    # ------------------------------------------------------------------
    # Check requests (CheckDispatcher)
    # ------------------------------------------------------------------

    def dispatch(self, envelope: CheckRequestEnvelope) -> None:
        self._emit(CHECK_REQUEST_TOPIC, envelope)
        logger.info(
            "%s dispatched id=%s session=%s", CHECK_REQUEST_TOPIC, envelope.id, envelope.session_id
        )

    def on_check_request(self, listener: Callable[[CheckRequestEnvelope], None]) -> None:
        self.subscribe(CHECK_REQUEST_TOPIC, listener)

    # ------------------------------------------------------------------
    # Resolution callbacks
    # ------------------------------------------------------------------

    def emit_check_resolved(self, resolution: CheckResolution) -> None:
        self._emit(CHECK_RESOLVED_TOPIC, resolution)
        logger.info(
            "%s received id=%s tier=%s", CHECK_RESOLVED_TOPIC, resolution.id, resolution.outcome_tier
        )

    def on_check_resolved(self, listener: Callable[[CheckResolution], None]) -> None:
        self.subscribe(CHECK_RESOLVED_TOPIC, listener)

    def emit_check_vetoed(self, veto: CheckVeto) -> None:
        self._emit(CHECK_VETOED_TOPIC, veto)
        logger.warning("%s received id=%s reason=%s", CHECK_VETOED_TOPIC, veto.id, veto.reason)

    def on_check_vetoed(self, listener: Callable[[CheckVeto], None]) -> None:
        self.subscribe(CHECK_VETOED_TOPIC, listener)

    # ------------------------------------------------------------------
    # Moderation (ModerationQueue)
    # ------------------------------------------------------------------

    def escalate(self, alert: ModerationAlert) -> None:
        self._emit(ADMIN_ALERT_TOPIC, alert)
        logger.warning(
            "%s dispatched session=%s audit_ref=%s severity=%s",
            ADMIN_ALERT_TOPIC, alert.session_id, alert.audit_ref, alert.severity,
        )

    def on_admin_alert(self, listener: Callable[[ModerationAlert], None]) -> None:
        self.subscribe(ADMIN_ALERT_TOPIC, listener)
