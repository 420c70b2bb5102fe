# emergency escalation + contact alerting for the ride monitor.

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable

from dotenv import load_dotenv
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from ride_monitor import config
from ride_monitor.config import VibrationPattern
from ride_monitor.risk_detector import RiskType
from ride_monitor.sampler import Position

# Logging
logger = logging.getLogger(__name__)


# Types
class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTO_FALL = "auto_fall"
    AUTO_IDLE = "auto_idle"
    AUTO_CRASH = "auto_crash"


class EmergencyStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"


class EmergencyPhase(Enum):
    IDLE = auto()
    COUNTDOWN = auto()
    ACTIVE = auto()
    RESOLVED = auto()
    FALSE_ALARM = auto()


_TRIGGER_FOR_EVENT = {
    RiskType.FALL_DETECTED: TriggerType.AUTO_FALL,
    RiskType.LONG_IDLE: TriggerType.AUTO_IDLE,
    RiskType.SUDDEN_STOP: TriggerType.AUTO_CRASH,
}


def trigger_for(risk_type: RiskType) -> TriggerType:
    return _TRIGGER_FOR_EVENT.get(risk_type, TriggerType.AUTO_CRASH)


@dataclass
class EmergencyContact:
    name: str # display name used in log messages and the spoken call message.
    phone: str # phone number in E.164 format (e.g. "+919812345678").
    is_primary: bool = False


@dataclass
class AlertConfig:
    rider_name: str # spoken aloud in the call message.
    contacts: list[EmergencyContact] # everyone to call and text


@dataclass
class AlertResult:
    action: str # e.g. "Call to Priya (+919812345678)".
    success: bool
    error: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class EmergencyEvent:
    trigger_type: TriggerType
    created_at: float
    location: Position | None = None
    status: EmergencyStatus = EmergencyStatus.ACTIVE
    resolved_at: float | None = None
    risk_event_id: str | None = None
    ride_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "trigger_type": self.trigger_type.value,
            "location": self.location.as_dict() if self.location else None,
            "status": self.status.value,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "risk_event_id": self.risk_event_id,
            "ride_id": self.ride_id,
        }


def maps_link(position: Position | None) -> str | None:
    if position is None:
        return None
    return f"https://maps.google.com/?q={position.lat:.6f},{position.lng:.6f}"


# Contact alerting
class ContactAlerter:
    """
    Calls and texts every emergency contact once an emergency goes active.

    Usage
    -----
        alert_config = AlertConfig(
            rider_name="Ravi",
            contacts=[EmergencyContact("Priya", "+919812345678", is_primary=True)],
        )
        alerter = ContactAlerter(alert_config)
        results = alerter.send_alert(Position(12.9716, 77.5946))

    Parameters
    ----------
    alert_config : AlertConfig
        Rider name and contact list.
    dotenv_path : str | None
        Optional explicit path to your .env file.
    account_sid, auth_token, from_number : str | None
        Explicit credentials (e.g. from Settings). Fall back to
        TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_NUMBER.

    Raises
    ------
    EnvironmentError
        If any credential is missing.
    """

    def __init__(
        self,
        alert_config: AlertConfig,
        dotenv_path: str | None = None,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
    ):
        self.config = alert_config

        load_dotenv(dotenv_path=dotenv_path)

        sid = account_sid or os.environ.get("TWILIO_ACCOUNT_SID", "")
        token = auth_token or os.environ.get("TWILIO_AUTH_TOKEN", "")
        self._from_number = from_number or os.environ.get("TWILIO_FROM_NUMBER", "")

        # Validate credentials before doing anything else
        missing = [
            name for name, val in [
                ("TWILIO_ACCOUNT_SID", sid),
                ("TWILIO_AUTH_TOKEN", token),
                ("TWILIO_FROM_NUMBER", self._from_number),
            ]
            if not val
        ]
        if missing:
            raise EnvironmentError(
                f"Missing required .env variable(s): {', '.join(missing)}"
            )

        logger.info("Twilio credentials loaded | SID=%s...", sid[:5])
        self._twilio = TwilioClient(sid, token)

    # Public API
    def send_alert(self, location: Position | None = None, test_mode: bool = False) -> list[AlertResult]:
        """
        Call and text every contact. Each action is attempted independently,
        so one failed number does not stop the others.

        Returns
        -------
        list[AlertResult]
            Two entries per contact (call + SMS).
        """
        results: list[AlertResult] = []
        logger.warning(
            "ALERT TRIGGERED | rider=%s | test=%s | location=%s",
            self.config.rider_name,
            test_mode,
            maps_link(location),
        )

        for contact in self.config.contacts:
            results.append(self._make_call(contact, location, test_mode))
            results.append(self._send_sms(contact, location, test_mode))

        successes = sum(1 for r in results if r.success)
        logger.info("Alert sequence complete: %d/%d actions succeeded.", successes, len(results))
        return results

    # Internal helpers
    def _make_call(self, contact: EmergencyContact, location: Position | None, test_mode: bool) -> AlertResult:
        action = f"Call to {contact.name} ({contact.phone})"
        try:
            call = self._twilio.calls.create(
                twiml=self._build_twiml(contact.name, location, test_mode),
                from_=self._from_number,
                to=contact.phone,
            )
            logger.info("Call placed | to=%s | sid=%s", contact.phone, call.sid)
            return AlertResult(action=action, success=True)

        except TwilioRestException as exc:
            logger.error("Call failed | to=%s | error=%s", contact.phone, exc.msg)
            return AlertResult(action=action, success=False, error=exc.msg)

        except Exception as exc:
            logger.error("Call unexpected error | to=%s | error=%s", contact.phone, exc, exc_info=True)
            return AlertResult(action=action, success=False, error=str(exc))

    def _send_sms(self, contact: EmergencyContact, location: Position | None, test_mode: bool) -> AlertResult:
        action = f"SMS to {contact.name} ({contact.phone})"
        try:
            message = self._twilio.messages.create(
                body=self._build_sms(location, test_mode),
                from_=self._from_number,
                to=contact.phone,
            )
            logger.info("SMS sent | to=%s | sid=%s", contact.phone, message.sid)
            return AlertResult(action=action, success=True)

        except TwilioRestException as exc:
            logger.error("SMS failed | to=%s | error=%s", contact.phone, exc.msg)
            return AlertResult(action=action, success=False, error=exc.msg)

        except Exception as exc:
            logger.error("SMS unexpected error | to=%s | error=%s", contact.phone, exc, exc_info=True)
            return AlertResult(action=action, success=False, error=str(exc))

    def _build_sms(self, location: Position | None, test_mode: bool) -> str:
        prefix = "[TEST] " if test_mode else ""
        link = maps_link(location)
        where = f"Last known location: {link}" if link else "Location unavailable."
        return f"{prefix}EMERGENCY: {self.config.rider_name} may need help on a ride. {where}"

    def _build_twiml(self, contact_name: str, location: Position | None, test_mode: bool) -> str:
        """
        The message repeats once; contacts may not take in the first pass
        before they realize what they're hearing.
        """
        test_prefix = "This is a test of the emergency alert system. " if test_mode else ""
        where = " Their location has been sent to you by text message." if location else ""
        message = (
            f"{test_prefix}"
            f"Hello {contact_name}. "
            f"This is an automated alert. "
            f"{self.config.rider_name} may have had an accident while riding "
            f"and has not cancelled the emergency.{where} "
            f"Please call them immediately and contact emergency services if needed."
        )
        return (
            f'<Response>'
            f'<Say voice="alice">{message}</Say>'
            f'<Pause length="1"/>'
            f'<Say voice="alice">{message}</Say>'
            f'</Response>'
        )


# Escalation state machine
class EmergencyEscalation:
    """
    countdown(10 s) -> active -> resolved, or countdown -> false_alarm.

    Parameters
    ----------
    clock :
        Provides now() / call_every().
    notifier :
        speak(key) / vibrate(pattern) collaborator.
    location_memory :
        Reinforced as a false alarm when the rider cancels during countdown.
    event_store :
        Receives the EmergencyEvent on every status change.
    alerter_factory : Callable[[], ContactAlerter] | None
        Built when the emergency goes active. EnvironmentError (missing
        credentials) is recorded as a failed AlertResult.
    on_change : Callable[[EmergencyEvent, EmergencyPhase], None] | None
        Called after every phase transition.
    background : bool
        Run contact alerting on a daemon thread.
    """

    def __init__(
        self,
        clock,
        notifier=None,
        location_memory=None,
        event_store=None,
        alerter_factory: Callable[[], ContactAlerter] | None = None,
        on_change: Callable[[EmergencyEvent, EmergencyPhase], None] | None = None,
        countdown_s: int = config.EMERGENCY_COUNTDOWN_SECONDS,
        background: bool = True,
    ):
        self._clock = clock
        self._notifier = notifier
        self._memory = location_memory
        self._store = event_store
        self._alerter_factory = alerter_factory
        self.on_change = on_change
        self.countdown_s = countdown_s
        self.background = background

        self.phase = EmergencyPhase.IDLE
        self.event: EmergencyEvent | None = None
        self.seconds_remaining = 0
        self.alert_results: list[AlertResult] = []
        self._snapshot = None
        self._tick_handle = None

    @property
    def in_progress(self) -> bool:
        return self.phase in (EmergencyPhase.COUNTDOWN, EmergencyPhase.ACTIVE)

    # Public API
    def start(self, trigger_type: TriggerType, location: Position | None = None,
              risk_event_id: str | None = None, snapshot=None,
              ride_id: str | None = None) -> EmergencyEvent:
        if self.phase is not EmergencyPhase.IDLE:
            raise RuntimeError("emergency escalation already used")

        self.event = EmergencyEvent(
            trigger_type=trigger_type,
            created_at=self._clock.now(),
            location=location,
            risk_event_id=risk_event_id,
            ride_id=ride_id,
        )
        self._snapshot = snapshot
        self.phase = EmergencyPhase.COUNTDOWN
        self.seconds_remaining = self.countdown_s

        logger.warning(
            "Emergency countdown | id=%s | trigger=%s | seconds=%d",
            self.event.id, trigger_type.value, self.countdown_s,
        )
        self._notify("vibrate", VibrationPattern.EMERGENCY)
        self._notify("speak", "emergency_triggered")
        self._persist()
        self._tick_handle = self._clock.call_every(1, self._tick)
        self._changed()
        return self.event

    def cancel(self) -> None:
        """Rider stands the emergency down: false_alarm in countdown, resolved once active."""
        if self.phase is EmergencyPhase.COUNTDOWN:
            self._terminate(EmergencyPhase.FALSE_ALARM, EmergencyStatus.FALSE_ALARM)
            if self._memory is not None and self.event.location is not None:
                self._memory.record_false_alarm(
                    self.event.location.lat, self.event.location.lng, self._snapshot)
        elif self.phase is EmergencyPhase.ACTIVE:
            self.resolve()

    def resolve(self) -> None:
        """Rider reports being okay after help was activated. No reinforcement."""
        if self.phase is EmergencyPhase.COUNTDOWN:
            self.cancel()
            return
        if self.phase is EmergencyPhase.ACTIVE:
            self._terminate(EmergencyPhase.RESOLVED, EmergencyStatus.RESOLVED)

    def stop(self) -> None:
        """Cancel timers without changing the outcome. Idempotent."""
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    # Internal helpers
    def _tick(self) -> None:
        if self.phase is not EmergencyPhase.COUNTDOWN:
            return
        self.seconds_remaining -= 1
        logger.debug("Emergency countdown | remaining=%d", self.seconds_remaining)
        if self.seconds_remaining <= 0:
            self._activate()

    def _activate(self) -> None:
        self.stop()
        self.phase = EmergencyPhase.ACTIVE
        logger.warning("Emergency active | id=%s | location=%s", self.event.id, maps_link(self.event.location))
        self._notify("speak", "help_coming")
        self._persist()
        self._changed()

        if self.background:
            threading.Thread(target=self._alert_contacts, daemon=True).start()
        else:
            self._alert_contacts()

    def _alert_contacts(self) -> None:
        if self._alerter_factory is None:
            logger.warning("No contact alerter configured; location not shared")
            return
        try:
            alerter = self._alerter_factory()
            self.alert_results = alerter.send_alert(self.event.location)
        except EnvironmentError as exc:
            logger.error("Alert failed, missing credentials: %s", exc)
            self.alert_results = [AlertResult(action="Emergency alert", success=False, error=str(exc))]
        except Exception as exc:
            logger.error("Alert failed, unexpected error: %s", exc, exc_info=True)
            self.alert_results = [AlertResult(action="Emergency alert", success=False, error=str(exc))]

    def _terminate(self, phase: EmergencyPhase, status: EmergencyStatus) -> None:
        self.stop()
        self.phase = phase
        self.event.status = status
        self.event.resolved_at = self._clock.now()
        logger.info("Emergency ended | id=%s | status=%s", self.event.id, status.value)
        self._notify("speak", "emergency_cancelled")
        self._persist()
        self._changed()

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.log_emergency_event(self.event.as_dict())
        except Exception as exc:
            logger.error("Failed to persist emergency event: %s", exc, exc_info=True)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.event, self.phase)

    def _notify(self, method: str, *args) -> None:
        if self._notifier is None:
            return
        try:
            getattr(self._notifier, method)(*args)
        except Exception as exc:
            logger.error("Notifier %s failed: %s", method, exc, exc_info=True)
