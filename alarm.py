"""
Silo Monitor - Alarm State Machine
Two-state hysteresis alarm driven by the spoilage risk score.

The alarm activates when risk exceeds the trigger threshold and clears only
once risk falls to or below a lower clear threshold. Risk values inside the
dead band between the two never cause a transition.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from thresholds import AlertSettings

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_THRESHOLD = 70.0
DEFAULT_DEAD_BAND = 20.0
DEFAULT_CYCLE_MS = 1000


class AlarmState(Enum):
    IDLE = "Idle"
    ACTIVE = "Active"


@dataclass(frozen=True)
class AlarmTransition:
    previous: AlarmState
    current: AlarmState
    risk: float
    at: float


class AlarmStateMachine:
    """
    Idle/Active alarm with a mandatory dead band.

    Muting only silences the buzzer; the logical state stays Active so the
    visual indication persists.
    """

    def __init__(self, trigger_threshold: float = DEFAULT_TRIGGER_THRESHOLD,
                 clear_threshold: Optional[float] = None,
                 cycle_ms: int = DEFAULT_CYCLE_MS,
                 buzzer_enabled: bool = True,
                 mute_after_acknowledge: bool = False):
        self.state = AlarmState.IDLE
        self.activated_at: Optional[float] = None
        self.muted = False
        self.reconfigure(trigger_threshold, clear_threshold, cycle_ms,
                         buzzer_enabled, mute_after_acknowledge)

    @classmethod
    def from_settings(cls, settings: AlertSettings) -> "AlarmStateMachine":
        return cls(
            trigger_threshold=settings.critical_risk_threshold,
            clear_threshold=settings.clear_risk_threshold,
            cycle_ms=settings.buzzer_duration,
            buzzer_enabled=settings.buzzer_enabled,
            mute_after_acknowledge=settings.mute_after_acknowledge,
        )

    def reconfigure(self, trigger_threshold: float, clear_threshold: Optional[float] = None,
                    cycle_ms: int = DEFAULT_CYCLE_MS, buzzer_enabled: bool = True,
                    mute_after_acknowledge: bool = False):
        """Apply new thresholds. The current state is kept."""
        if clear_threshold is None:
            clear_threshold = trigger_threshold - DEFAULT_DEAD_BAND
        if clear_threshold >= trigger_threshold:
            raise ValueError(
                f"Clear threshold ({clear_threshold}) must be below trigger threshold ({trigger_threshold})"
            )
        if cycle_ms <= 0:
            raise ValueError("Buzzer cycle must be positive")
        self.trigger_threshold = trigger_threshold
        self.clear_threshold = clear_threshold
        self.cycle_ms = cycle_ms
        self.buzzer_enabled = buzzer_enabled
        self.mute_after_acknowledge = mute_after_acknowledge

    @property
    def is_active(self) -> bool:
        return self.state is AlarmState.ACTIVE

    # Transition guards

    def should_activate(self, risk: float) -> bool:
        return self.state is AlarmState.IDLE and risk > self.trigger_threshold

    def should_clear(self, risk: float) -> bool:
        return self.state is AlarmState.ACTIVE and risk <= self.clear_threshold

    def update(self, risk: float, now: float) -> Optional[AlarmTransition]:
        """
        Feed one risk score. Returns the transition taken, if any.

        Args:
            risk: latest spoilage risk (0-100)
            now: current time in seconds (monotonic clock)
        """
        if self.should_activate(risk):
            previous = self.state
            self.state = AlarmState.ACTIVE
            self.activated_at = now
            if not self.mute_after_acknowledge:
                self.muted = False
            logger.warning("Alarm ACTIVE: risk %.1f%% exceeds %.1f%%", risk, self.trigger_threshold)
            return AlarmTransition(previous, self.state, risk, now)

        if self.should_clear(risk):
            previous = self.state
            self.state = AlarmState.IDLE
            self.activated_at = None
            logger.info("Alarm cleared: risk %.1f%% at or below %.1f%%", risk, self.clear_threshold)
            return AlarmTransition(previous, self.state, risk, now)

        return None

    def mute(self):
        """Operator acknowledge: silence the buzzer, keep the alarm state."""
        self.muted = True

    def unmute(self):
        self.muted = False

    def toggle_mute(self) -> bool:
        self.muted = not self.muted
        return self.muted

    def buzzer_on(self, now: float) -> bool:
        """On for the first half of each cycle while Active and audible."""
        if not self.is_active or self.muted or not self.buzzer_enabled:
            return False
        elapsed_ms = (now - self.activated_at) * 1000.0
        return (elapsed_ms % self.cycle_ms) < self.cycle_ms / 2
