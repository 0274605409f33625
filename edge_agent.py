"""
Silo Monitor - Edge Agent
Samples the storage unit sensor, derives risk, drives the local alarm and
delivers readings to the aggregation service.

Runs as a single-threaded cooperative loop: one cycle finishes before the
next one starts. Only delivery and the configuration pull touch the network,
and both are bounded by a request timeout.
"""

import logging
import os
import random
import sys
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

from alarm import AlarmState, AlarmStateMachine
from predictor import analyze_window, risk_trend_label
from risk_scorer import Reading, Sample, build_reading
from silo_errors import (
    ConfigFetchError,
    ConfigValidationError,
    DeliveryError,
    InsufficientDataError,
    ReadingRejectedError,
    SensorReadError,
)
from thresholds import ThresholdsConfiguration, default_config
from trend_analysis import HistoryWindow

logger = logging.getLogger(__name__)

# Agent Configuration
SERVER_URL = os.environ.get('SERVER_URL', 'http://127.0.0.1:5000')
API_KEY = os.environ.get('API_KEY', 'demo123')
DEVICE_ID = os.environ.get('DEVICE_ID', 'SILO-01')

REQUEST_TIMEOUT = 10            # seconds
CONFIG_PULL_INTERVAL = 300      # seconds
OUTBOX_SIZE = 32
MAX_DELIVERY_ATTEMPTS = 5
BACKOFF_BASE = 2.0              # seconds
BACKOFF_CAP = 60.0              # seconds
MAX_DELIVERIES_PER_CYCLE = 5


# ============================================================================
# SENSOR SOURCE
# ============================================================================

class SimulatedSensor:
    """Produces realistic cold-store samples; optionally fails at random."""

    def __init__(self, failure_rate: float = 0.0, rng: Optional[random.Random] = None):
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    def sample(self) -> Sample:
        if self.rng.random() < self.failure_rate:
            raise SensorReadError("Sensor did not respond")

        # Mostly inside the ideal 4-8°C / 90-95% band, occasionally drifting out
        temperature = self.rng.choice([
            round(self.rng.uniform(4, 8), 1),     # Normal (80% probability)
            round(self.rng.uniform(4, 8), 1),
            round(self.rng.uniform(4, 8), 1),
            round(self.rng.uniform(4, 8), 1),
            round(self.rng.uniform(9, 12), 1),    # Getting warm (10%)
            round(self.rng.uniform(12.5, 16), 1),  # Warning zone (10%)
        ])
        humidity = round(self.rng.uniform(86, 97), 1)
        gas_level = round(self.rng.uniform(80, 350), 0)
        return Sample(temperature=temperature, humidity=humidity, gas_level=gas_level)


# ============================================================================
# NETWORK COLLABORATORS
# ============================================================================

class HttpReadingSink:
    """Delivers readings to POST /api/data."""

    def __init__(self, base_url: str = SERVER_URL, api_key: str = API_KEY,
                 session=None, timeout: float = REQUEST_TIMEOUT):
        self.url = base_url.rstrip('/') + '/api/data'
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def record(self, reading: Reading) -> dict:
        try:
            response = self.session.post(
                self.url,
                json=reading.to_dict(),
                headers={"Content-Type": "application/json", "x-api-key": self.api_key},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"Could not reach {self.url}: {e}") from e

        if 400 <= response.status_code < 500:
            raise ReadingRejectedError(
                f"Server rejected reading ({response.status_code}): {response.text}")
        if response.status_code >= 300:
            raise DeliveryError(f"Server error ({response.status_code})")
        try:
            return response.json()
        except ValueError:
            # 2xx means stored; the body is optional
            logger.debug("Non-JSON acknowledgement from %s", self.url)
            return {}


class HttpConfigSource:
    """Pulls the thresholds document from GET /api/config."""

    def __init__(self, base_url: str = SERVER_URL, session=None, timeout: float = REQUEST_TIMEOUT):
        self.url = base_url.rstrip('/') + '/api/config'
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self) -> ThresholdsConfiguration:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            return ThresholdsConfiguration.from_dict(response.json())
        except requests.exceptions.RequestException as e:
            raise ConfigFetchError(f"Could not fetch configuration: {e}") from e
        except ValueError as e:
            raise ConfigFetchError(f"Configuration response is not JSON: {e}") from e
        except ConfigValidationError as e:
            raise ConfigFetchError(f"Server sent an invalid configuration: {e}") from e


class ConsoleActuator:
    """Stand-in for the buzzer/LED driver: logs every change of output."""

    def __init__(self):
        self.state = AlarmState.IDLE
        self.muted = False
        self.buzzer = False

    def set_alarm(self, state: AlarmState, muted: bool, buzzer: bool = False):
        if (state, muted) != (self.state, self.muted):
            logger.info("Actuator -> %s%s", state.value, " (muted)" if muted else "")
        if buzzer != self.buzzer:
            logger.debug("Buzzer %s", "on" if buzzer else "off")
        self.state = state
        self.muted = muted
        self.buzzer = buzzer


# ============================================================================
# OUTBOUND QUEUE
# ============================================================================

@dataclass
class PendingDelivery:
    reading: Reading
    attempts: int = 0
    next_attempt_at: float = 0.0


class OutboundQueue:
    """
    Bounded queue of readings awaiting delivery.

    Failed deliveries are retried with exponential backoff up to a capped
    number of attempts. Readings the server rejects are dropped at once. When full, the oldest pending reading is dropped.
    Readings leave in the order they were taken.
    """

    def __init__(self, maxlen: int = OUTBOX_SIZE, max_attempts: int = MAX_DELIVERY_ATTEMPTS,
                 backoff_base: float = BACKOFF_BASE, backoff_cap: float = BACKOFF_CAP):
        self._pending = deque()
        self.maxlen = maxlen
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.dropped = 0

    def __len__(self):
        return len(self._pending)

    def enqueue(self, reading: Reading, now: float):
        if len(self._pending) >= self.maxlen:
            lost = self._pending.popleft()
            self.dropped += 1
            logger.warning("Outbox full, dropping reading from %s", lost.reading.timestamp.isoformat())
        self._pending.append(PendingDelivery(reading, next_attempt_at=now))

    def backoff(self, attempts: int) -> float:
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempts - 1)))

    def flush(self, sink, now: float, limit: int = MAX_DELIVERIES_PER_CYCLE) -> int:
        """
        Deliver due readings, oldest first. Stops at the first failure or
        after `limit` deliveries so a sampling cycle is never held up.
        Returns the number delivered.
        """
        delivered = 0
        while self._pending and delivered < limit:
            head = self._pending[0]
            if head.next_attempt_at > now:
                break
            try:
                sink.record(head.reading)
            except ReadingRejectedError as e:
                self._pending.popleft()
                self.dropped += 1
                logger.error("Dropping rejected reading: %s", e)
                continue
            except DeliveryError as e:
                head.attempts += 1
                if head.attempts >= self.max_attempts:
                    self._pending.popleft()
                    self.dropped += 1
                    logger.error("Dropping reading after %d attempts: %s", head.attempts, e)
                else:
                    head.next_attempt_at = now + self.backoff(head.attempts)
                    logger.warning("Delivery failed (attempt %d), retrying in %.0fs: %s",
                                   head.attempts, head.next_attempt_at - now, e)
                break
            self._pending.popleft()
            delivered += 1
        return delivered


# ============================================================================
# AGENT
# ============================================================================

class EdgeAgent:
    """One storage unit: sensor -> risk -> alarm -> outbox."""

    def __init__(self, device_id: str, sensor, sink, config_source=None, actuator=None,
                 config: Optional[ThresholdsConfiguration] = None,
                 outbox: Optional[OutboundQueue] = None,
                 config_pull_interval: float = CONFIG_PULL_INTERVAL,
                 sample_interval: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            sample_interval: seconds between samples. Overrides the
                configuration's sampleInterval, including pulled updates.
        """
        self.device_id = device_id
        self.sensor = sensor
        self.sink = sink
        self.config_source = config_source
        self.actuator = actuator or ConsoleActuator()
        self.config = config or default_config()
        self.outbox = outbox or OutboundQueue()
        self.config_pull_interval = config_pull_interval
        self.sample_interval = sample_interval
        self.clock = clock
        self.window = HistoryWindow(self.config.data_collection.history_size)
        self.alarm = AlarmStateMachine.from_settings(self.config.alerts)
        self._next_config_pull = 0.0

    # Configuration

    def apply_config(self, config: ThresholdsConfiguration):
        """Swap in a new cached configuration."""
        self.alarm.reconfigure(
            config.alerts.critical_risk_threshold,
            config.alerts.clear_risk_threshold,
            config.alerts.buzzer_duration,
            config.alerts.buzzer_enabled,
            config.alerts.mute_after_acknowledge,
        )
        self.window.resize(config.data_collection.history_size)
        self.config = config

    def refresh_config(self, now: float) -> bool:
        """Pull configuration when due. Keeps the cached copy on failure."""
        if self.config_source is None or now < self._next_config_pull:
            return False
        self._next_config_pull = now + self.config_pull_interval
        try:
            config = self.config_source.fetch()
        except ConfigFetchError as e:
            logger.warning("Keeping cached configuration v%d: %s", self.config.version, e)
            return False
        if config.version != self.config.version:
            logger.info("Configuration updated: v%d -> v%d", self.config.version, config.version)
        self.apply_config(config)
        return True

    # Operator

    def mute(self):
        self.alarm.mute()
        self.tick()

    def unmute(self):
        self.alarm.unmute()
        self.tick()

    def toggle_mute(self) -> bool:
        muted = self.alarm.toggle_mute()
        self.tick()
        return muted

    def tick(self, now: Optional[float] = None):
        """Drive the actuator, including the buzzer on/off pattern."""
        now = self.clock() if now is None else now
        self.actuator.set_alarm(self.alarm.state, self.alarm.muted, self.alarm.buzzer_on(now))

    # Sampling

    def _annotate(self, reading: Reading) -> Reading:
        """Attach the trend label and prediction snapshot for audit/display."""
        snapshot = self.window.snapshot() + (reading,)
        trend = risk_trend_label(snapshot, self.config).value
        prediction = "NEED_MORE_DATA"
        if len(snapshot) >= self.config.analytics.predictions.minimum_data_points:
            try:
                analytics = analyze_window(snapshot, self.config,
                                           window_size=self.config.data_collection.history_size)
                prediction = analytics.prediction.to_json()
            except InsufficientDataError:
                pass
        return replace(reading, trend_analysis=trend, prediction=prediction)

    def run_cycle(self, now: Optional[float] = None) -> Optional[Reading]:
        """
        Run one evaluation cycle. Returns the new reading, or None when the
        sensor failed (history is left unchanged).
        """
        now = self.clock() if now is None else now
        self.refresh_config(now)

        try:
            sample = self.sensor.sample()
        except SensorReadError as e:
            logger.warning("Sensor read failed, skipping cycle: %s", e)
            self.outbox.flush(self.sink, now)
            return None

        reading = build_reading(self.device_id, sample, self.config.thresholds,
                                timestamp=datetime.now(timezone.utc))
        reading = self._annotate(reading)
        self.window.append(reading)

        self.alarm.update(reading.spoilage_risk, now)
        self.tick(now)

        self.outbox.enqueue(reading, now)
        self.outbox.flush(self.sink, now)
        return reading

    def run(self, count: Optional[int] = None, sleep: Callable[[float], None] = time.sleep):
        """Sample continuously every sampleInterval."""
        taken = 0
        while count is None or taken < count:
            reading = self.run_cycle()
            if reading is not None:
                stamp = datetime.now().strftime("%H:%M:%S")
                print(f"[{stamp}] {reading.temperature}°C, {reading.humidity}% "
                      f"-> risk {reading.spoilage_risk:.1f}% [{reading.health_class.value}] "
                      f"alarm={self.alarm.state.value} pending={len(self.outbox)}")
            taken += 1
            if count is None or taken < count:
                self._wait(self.interval, sleep)

    @property
    def interval(self) -> float:
        """Seconds between samples."""
        if self.sample_interval is not None:
            return self.sample_interval
        return self.config.data_collection.sample_interval / 1000.0

    def _wait(self, seconds: float, sleep: Callable[[float], None]):
        # An audible alarm is re-driven every half buzzer cycle
        waited = 0.0
        while waited < seconds:
            audible = self.alarm.is_active and not self.alarm.muted and self.alarm.buzzer_enabled
            step = seconds - waited
            if audible:
                step = min(step, self.alarm.cycle_ms / 2000.0)
            sleep(step)
            waited += step
            if audible:
                self.tick()


def main(argv=None):
    """
    Usage: python edge_agent.py [server_url] [interval_seconds] [count]
    """
    argv = sys.argv[1:] if argv is None else argv
    server_url = argv[0] if len(argv) > 0 else SERVER_URL
    count = int(argv[2]) if len(argv) > 2 else None

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    sample_interval = float(argv[1]) if len(argv) > 1 else None

    agent = EdgeAgent(
        DEVICE_ID,
        SimulatedSensor(failure_rate=0.05),
        HttpReadingSink(server_url, API_KEY),
        HttpConfigSource(server_url),
        sample_interval=sample_interval,
    )

    print("=" * 60)
    print("  Silo Monitor - Edge Agent")
    print(f"  Device: {DEVICE_ID}")
    print(f"  Server: {server_url}")
    print(f"  Count: {'Unlimited' if count is None else count}")
    print("  Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    try:
        agent.run(count)
    except KeyboardInterrupt:
        print(f"\n\nStopped. Pending deliveries: {len(agent.outbox)}, dropped: {agent.outbox.dropped}")


if __name__ == "__main__":
    main()
