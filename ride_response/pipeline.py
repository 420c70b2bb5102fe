"""
ride_response/pipeline.py

Single entry point for reacting to scored risk events.

RideMonitor hands every scored event plus its chosen Action to handle().
All routing (suppress / confirm / alert / emergency), the at-most-one
session rule and reinforcement of location memory live here, so nothing
outside this module needs to know about ConfirmationSession or
EmergencyEscalation.

    suppress   -> logged only
    confirm    -> ConfirmationSession
    alert      -> notification already sent by the detector, confirmation offered
    emergency  -> EmergencyEscalation straight away (preempts a confirmation)

Confirmation outcomes:
    ok         -> false alarm recorded for the cell, event marked resolved
    danger     -> true alarm recorded, emergency started
    timeout    -> timeout_policy: ALERT (speak + vibrate) or EMERGENCY
    cancelled  -> nothing
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from ride_monitor import config
from ride_monitor.config import VibrationPattern
from ride_monitor.confidence_scorer import Action, ScoredRiskEvent
from ride_monitor.location_memory import SensorSnapshot
from ride_monitor.risk_detector import RiskEvent
from ride_monitor.sampler import Position
from ride_response.confirmation import ConfirmationOutcome, ConfirmationResult, ConfirmationSession
from ride_response.emergency_alert import (
    ContactAlerter,
    EmergencyEscalation,
    EmergencyEvent,
    EmergencyPhase,
    TriggerType,
    trigger_for,
)

logger = logging.getLogger(__name__)


class TimeoutPolicy(str, Enum):
    ALERT = "alert"
    EMERGENCY = "emergency"


class ResponseCoordinator:
    """
    Parameters
    ----------
    clock, notifier :
        Shared with the rest of the monitor.
    location_memory : LocationMemoryStore | None
        Reinforced by confirmation and emergency outcomes.
    event_store : EventStore | None
        Receives emergency events.
    listening_engine : ListeningEngine | None
        Speech input for confirmations. None = only timeout / cancel.
    alerter_factory : Callable[[], ContactAlerter] | None
        Builds the Twilio alerter when an emergency goes active.
    timeout_policy : TimeoutPolicy
        What an unanswered confirmation turns into. Never silent.
    on_event_resolved : Callable[[str], None] | None
        Called with a risk event id when the rider confirmed ok.
    on_emergency_change : Callable[[EmergencyEvent, EmergencyPhase], None] | None
        Forwarded from the escalation state machine.
    """

    def __init__(
        self,
        clock,
        notifier=None,
        location_memory=None,
        event_store=None,
        listening_engine=None,
        alerter_factory: Callable[[], ContactAlerter] | None = None,
        language: str = config.DEFAULT_LANGUAGE,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.ALERT,
        confirmation_timeout_s: float = config.CONFIRMATION_TIMEOUT_SECONDS,
        background: bool = True,
        on_event_resolved: Callable[[str], None] | None = None,
        on_emergency_change: Callable[[EmergencyEvent, EmergencyPhase], None] | None = None,
    ):
        if confirmation_timeout_s <= 0:
            raise ValueError("confirmation_timeout_s must be positive")
        self._clock = clock
        self._notifier = notifier
        self._memory = location_memory
        self._store = event_store
        self._engine = listening_engine
        self._alerter_factory = alerter_factory
        self.language = language
        self.timeout_policy = timeout_policy
        self.confirmation_timeout_s = confirmation_timeout_s
        self.background = background
        self.on_event_resolved = on_event_resolved
        self.on_emergency_change = on_emergency_change

        self.ride_id: str | None = None
        self.confirmation: ConfirmationSession | None = None
        self.emergency: EmergencyEscalation | None = None
        self._confirming: tuple[ScoredRiskEvent, SensorSnapshot | None] | None = None
        self._stood_down: set[str] = set()     # rider said ok / cancelled
        self._escalated: set[str] = set()      # risk events that started an emergency

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def confirming(self) -> bool:
        return self.confirmation is not None and self.confirmation.active

    @property
    def emergency_in_progress(self) -> bool:
        return self.emergency is not None and self.emergency.in_progress

    @property
    def busy(self) -> bool:
        return self.confirming or self.emergency_in_progress

    # -----------------------------------------------------------------------
    # Main entry point
    # -----------------------------------------------------------------------

    def handle(self, scored: ScoredRiskEvent, action: Action,
               snapshot: SensorSnapshot | None = None) -> None:
        event = scored.event
        logger.info(
            "Response | type=%s | confidence=%d | action=%s",
            event.type.value, scored.confidence, action.value,
        )

        if action is Action.SUPPRESS:
            return

        if action is Action.EMERGENCY:
            self.start_emergency(trigger_for(event.type), event.location,
                                 risk_event=event, snapshot=snapshot)
            return

        # CONFIRM, and ALERT which still offers the rider a confirmation
        if self.busy:
            logger.info("Confirmation skipped, another session is active | type=%s", event.type.value)
            return
        self._start_confirmation(scored, snapshot)

    def start_emergency(self, trigger: TriggerType, location: Position | None,
                        risk_event: RiskEvent | None = None,
                        snapshot: SensorSnapshot | None = None) -> EmergencyEvent | None:
        """Start the countdown unless one is already running. Stops any confirmation."""
        if self.emergency_in_progress:
            logger.info("Emergency already in progress, ignoring %s trigger", trigger.value)
            return None

        if self.confirming:
            self.confirmation.stop()
        self._confirming = None

        if risk_event is not None:
            self._escalated.add(risk_event.id)

        self.emergency = EmergencyEscalation(
            clock=self._clock,
            notifier=self._notifier,
            location_memory=self._memory,
            event_store=self._store,
            alerter_factory=self._alerter_factory,
            on_change=self.on_emergency_change,
            background=self.background,
        )
        return self.emergency.start(
            trigger,
            location=location,
            risk_event_id=risk_event.id if risk_event else None,
            snapshot=snapshot,
            ride_id=self.ride_id,
        )

    def on_fall_grace_elapsed(self, event: RiskEvent) -> None:
        """Grace period after fall_detected ran out without the rider standing it down."""
        if event.id in self._stood_down or event.id in self._escalated:
            logger.debug("Fall grace ignored | event=%s", event.id)
            return
        snapshot = None
        if self._confirming is not None and self._confirming[0].event.id == event.id:
            snapshot = self._confirming[1]
        self.start_emergency(TriggerType.AUTO_FALL, event.location, risk_event=event, snapshot=snapshot)

    # -----------------------------------------------------------------------
    # Rider commands
    # -----------------------------------------------------------------------

    def feed_transcript(self, text: str) -> None:
        if self.confirming:
            self.confirmation.feed_transcript(text)

    def cancel_confirmation(self) -> None:
        if self.confirming:
            self.confirmation.cancel()

    def cancel_emergency(self) -> None:
        if self.emergency_in_progress:
            self.emergency.cancel()

    def resolve_emergency(self) -> None:
        if self.emergency_in_progress:
            self.emergency.resolve()

    def shutdown(self) -> None:
        """Tear down timers at ride end without producing outcomes."""
        if self.confirmation is not None:
            self.confirmation.stop()
        if self.emergency is not None:
            self.emergency.stop()
        self._confirming = None

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _start_confirmation(self, scored: ScoredRiskEvent, snapshot: SensorSnapshot | None) -> None:
        self._confirming = (scored, snapshot)
        self.confirmation = ConfirmationSession(
            notifier=self._notifier,
            engine=self._engine,
            clock=self._clock,
            on_result=self._on_confirmation,
            language=self.language,
            timeout_s=self.confirmation_timeout_s,
        )
        self.confirmation.start()

    def _on_confirmation(self, outcome: ConfirmationOutcome) -> None:
        if self._confirming is None:
            return
        scored, snapshot = self._confirming
        self._confirming = None
        event = scored.event

        if outcome.result is ConfirmationResult.OK:
            self._stood_down.add(event.id)
            if self._memory is not None and event.location is not None:
                self._memory.record_false_alarm(event.location.lat, event.location.lng, snapshot)
            if self.on_event_resolved is not None:
                self.on_event_resolved(event.id)

        elif outcome.result is ConfirmationResult.DANGER:
            if self._memory is not None and event.location is not None:
                self._memory.record_true_alarm(event.location.lat, event.location.lng, snapshot)
            self.start_emergency(trigger_for(event.type), event.location,
                                 risk_event=event, snapshot=snapshot)

        elif outcome.result is ConfirmationResult.TIMEOUT:
            if self.timeout_policy is TimeoutPolicy.EMERGENCY:
                self.start_emergency(trigger_for(event.type), event.location,
                                     risk_event=event, snapshot=snapshot)
            else:
                logger.warning("No answer from rider, alerting | type=%s", event.type.value)
                self._notify("speak", event.type.value)
                self._notify("vibrate", VibrationPattern.ALERT)

        elif outcome.result is ConfirmationResult.CANCELLED:
            self._stood_down.add(event.id)

    def _notify(self, method: str, *args) -> None:
        if self._notifier is None:
            return
        try:
            getattr(self._notifier, method)(*args)
        except Exception as exc:
            logger.error("Notifier %s failed: %s", method, exc, exc_info=True)
