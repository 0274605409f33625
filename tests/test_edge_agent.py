"""Tests for the edge agent loop, its outbound queue and HTTP collaborators."""

import json
import random
from unittest.mock import MagicMock

import pytest
import requests

from alarm import AlarmState
import edge_agent
from edge_agent import (
    EdgeAgent,
    HttpConfigSource,
    HttpReadingSink,
    OutboundQueue,
    SimulatedSensor,
)
from risk_scorer import Sample
from silo_errors import ConfigFetchError, DeliveryError, ReadingRejectedError, SensorReadError
from thresholds import ThresholdsConfiguration

HOT_SAMPLE = Sample(temperature=20.0, humidity=99.0, gas_level=100.0)
COOL_SAMPLE = Sample(temperature=6.0, humidity=86.0, gas_level=100.0)
BUZZER_CONFIG = ThresholdsConfiguration.from_dict({'alerts': {'buzzerEnabled': True, 'buzzerDuration': 1000}})


class ScriptedSensor:
    """Returns queued samples; exceptions in the queue are raised."""

    def __init__(self, *samples):
        self.samples = list(samples)

    def sample(self):
        item = self.samples.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class RecordingSink:

    def __init__(self, failures=0, rejections=0):
        self.failures = failures
        self.rejections = rejections
        self.recorded = []

    def record(self, reading):
        if self.rejections > 0:
            self.rejections -= 1
            raise ReadingRejectedError("400 Bad Request")
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("service unavailable")
        self.recorded.append(reading)
        return {'success': True}


class RecordingActuator:

    def __init__(self):
        self.calls = []

    def set_alarm(self, state, muted, buzzer=False):
        self.calls.append((state, muted, buzzer))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def actuator():
    return RecordingActuator()


def make_agent(sensor, sink, actuator=None, **kwargs):
    return EdgeAgent('SILO-T', sensor, sink, actuator=actuator or RecordingActuator(), **kwargs)


class TestEdgeAgentCycle:

    def test_reading_is_built_and_delivered(self, sink):
        agent = make_agent(ScriptedSensor(COOL_SAMPLE), sink)
        reading = agent.run_cycle(now=0.0)

        assert reading.device_id == 'SILO-T'
        assert reading.spoilage_risk == 0.0
        assert sink.recorded == [reading]
        assert len(agent.window) == 1
        assert reading.trend_analysis == 'INSUFFICIENT_DATA'
        assert reading.prediction == 'NEED_MORE_DATA'

    def test_sensor_failure_skips_cycle(self, sink):
        agent = make_agent(ScriptedSensor(COOL_SAMPLE, SensorReadError("timeout")), sink)
        agent.run_cycle(now=0.0)

        assert agent.run_cycle(now=30.0) is None
        assert len(agent.window) == 1
        assert len(sink.recorded) == 1

    def test_prediction_attached_once_enough_history(self, sink):
        agent = make_agent(ScriptedSensor(*[COOL_SAMPLE] * 5), sink)
        readings = [agent.run_cycle(now=float(i)) for i in range(5)]

        assert readings[3].prediction == 'NEED_MORE_DATA'
        prediction = json.loads(readings[4].prediction)
        assert prediction['predictedRisk'] == 0.0
        assert readings[4].trend_analysis == 'STABLE'

    def test_alarm_follows_risk(self, sink, actuator):
        agent = make_agent(ScriptedSensor(HOT_SAMPLE, COOL_SAMPLE), sink, actuator)

        hot = agent.run_cycle(now=0.0)
        assert hot.spoilage_risk > 70
        assert agent.alarm.state is AlarmState.ACTIVE

        agent.run_cycle(now=1.0)
        assert agent.alarm.state is AlarmState.IDLE
        assert actuator.calls == [(AlarmState.ACTIVE, False, False),
                                 (AlarmState.IDLE, False, False)]

    def test_mute_reaches_actuator(self, sink, actuator):
        agent = make_agent(ScriptedSensor(HOT_SAMPLE), sink, actuator)
        agent.run_cycle(now=0.0)
        agent.mute()

        assert agent.alarm.is_active
        assert actuator.calls[-1] == (AlarmState.ACTIVE, True, False)

    def test_unmute_reaches_actuator(self, sink, actuator):
        agent = make_agent(ScriptedSensor(HOT_SAMPLE), sink, actuator, config=BUZZER_CONFIG,
                           clock=lambda: 0.0)
        agent.run_cycle(now=0.0)
        agent.mute()
        agent.unmute()

        assert not agent.alarm.muted
        assert actuator.calls[-2:] == [(AlarmState.ACTIVE, True, False),
                                       (AlarmState.ACTIVE, False, True)]

    def test_buzzer_pattern_reaches_actuator(self, sink, actuator):
        agent = make_agent(ScriptedSensor(HOT_SAMPLE), sink, actuator, config=BUZZER_CONFIG)
        agent.run_cycle(now=0.0)
        for now in (0.6, 1.2, 1.7):
            agent.tick(now)

        assert [buzzer for _, _, buzzer in actuator.calls] == [True, False, True, False]

    def test_buzzer_stays_silent_when_disabled(self, sink, actuator):
        agent = make_agent(ScriptedSensor(HOT_SAMPLE), sink, actuator)
        agent.run_cycle(now=0.0)
        agent.tick(1.2)

        assert agent.alarm.is_active
        assert [buzzer for _, _, buzzer in actuator.calls] == [False, False]

    def test_failed_delivery_is_retried_later(self):
        sink = RecordingSink(failures=1)
        agent = make_agent(ScriptedSensor(COOL_SAMPLE, COOL_SAMPLE), sink)

        first = agent.run_cycle(now=0.0)
        assert sink.recorded == []
        assert len(agent.outbox) == 1

        second = agent.run_cycle(now=30.0)
        assert sink.recorded == [first, second]
        assert len(agent.outbox) == 0

    def test_run_sleeps_sample_interval(self, sink):
        agent = make_agent(ScriptedSensor(COOL_SAMPLE, COOL_SAMPLE), sink, clock=lambda: 0.0)
        sleeps = []
        agent.run(count=2, sleep=sleeps.append)

        assert sleeps == [30.0]
        assert len(sink.recorded) == 2

    def test_run_drives_buzzer_between_samples(self, sink, actuator):
        clock = [0.0]

        def sleep(seconds):
            sleeps.append(seconds)
            clock[0] += seconds

        sleeps = []
        agent = make_agent(ScriptedSensor(HOT_SAMPLE, HOT_SAMPLE), sink, actuator,
                           config=BUZZER_CONFIG, clock=lambda: clock[0])
        agent.run(count=2, sleep=sleep)

        assert sleeps == [0.5] * 60
        buzzer = [b for _, _, b in actuator.calls]
        assert buzzer[0] is True
        assert buzzer[1:61] == [False, True] * 30
        assert len(sink.recorded) == 2

    def test_interval_override_survives_config_pull(self, sink):
        source = MagicMock()
        source.fetch.return_value = ThresholdsConfiguration.from_dict({
            'dataCollection': {'sampleInterval': 60000},
            'version': 2,
        })
        agent = make_agent(ScriptedSensor(COOL_SAMPLE, COOL_SAMPLE), sink, config_source=source,
                           sample_interval=5.0, clock=lambda: 0.0)
        sleeps = []
        agent.run(count=2, sleep=sleeps.append)

        assert agent.config.data_collection.sample_interval == 60000
        assert sleeps == [5.0]

    def test_main_passes_interval_to_agent(self, monkeypatch):
        agent_class = MagicMock()
        monkeypatch.setattr(edge_agent, 'EdgeAgent', agent_class)
        edge_agent.main(['http://silo.local:5000', '5', '1'])

        assert agent_class.call_args.kwargs['sample_interval'] == 5.0
        agent_class.return_value.run.assert_called_once_with(1)


class TestConfigRefresh:

    def test_new_config_is_applied(self, sink):
        source = MagicMock()
        source.fetch.return_value = ThresholdsConfiguration.from_dict({
            'alerts': {'criticalRiskThreshold': 90, 'clearRiskThreshold': 60},
            'dataCollection': {'historySize': 4},
            'version': 2,
        })
        agent = make_agent(ScriptedSensor(*[COOL_SAMPLE] * 6), sink, config_source=source)
        for i in range(6):
            agent.run_cycle(now=float(i))

        assert agent.config.version == 2
        assert agent.alarm.trigger_threshold == 90
        assert len(agent.window) == 4
        # Pulled once, then not again until the interval elapses
        assert source.fetch.call_count == 1

    def test_fetch_failure_keeps_cached_config(self, sink):
        source = MagicMock()
        source.fetch.side_effect = ConfigFetchError("unreachable")
        agent = make_agent(ScriptedSensor(COOL_SAMPLE), sink, config_source=source)
        cached = agent.config

        assert agent.run_cycle(now=0.0) is not None
        assert agent.config is cached

    def test_pulls_again_after_interval(self, sink):
        source = MagicMock()
        source.fetch.return_value = ThresholdsConfiguration()
        agent = make_agent(ScriptedSensor(COOL_SAMPLE, COOL_SAMPLE), sink,
                           config_source=source, config_pull_interval=60)
        agent.run_cycle(now=0.0)
        agent.run_cycle(now=61.0)

        assert source.fetch.call_count == 2


class TestOutboundQueue:

    def test_backoff_doubles_and_caps(self):
        outbox = OutboundQueue(backoff_base=2.0, backoff_cap=60.0)
        assert [outbox.backoff(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]
        assert outbox.backoff(10) == 60.0

    def test_not_retried_before_backoff_elapses(self, make_reading):
        outbox = OutboundQueue(backoff_base=2.0)
        failing = RecordingSink(failures=1)
        outbox.enqueue(make_reading(6.0, 90.0), now=0.0)

        assert outbox.flush(failing, now=0.0) == 0
        assert outbox.flush(failing, now=1.0) == 0
        assert outbox.flush(failing, now=2.0) == 1
        assert len(outbox) == 0

    def test_dropped_after_max_attempts(self, make_reading):
        outbox = OutboundQueue(max_attempts=2, backoff_base=1.0)
        failing = RecordingSink(failures=10)
        outbox.enqueue(make_reading(6.0, 90.0), now=0.0)

        outbox.flush(failing, now=0.0)
        outbox.flush(failing, now=5.0)

        assert len(outbox) == 0
        assert outbox.dropped == 1

    def test_rejected_reading_is_dropped_without_retry(self, make_reading):
        outbox = OutboundQueue()
        readings = [make_reading(6.0, 90.0, minute=i) for i in range(2)]
        for reading in readings:
            outbox.enqueue(reading, now=0.0)
        sink = RecordingSink(rejections=1)

        assert outbox.flush(sink, now=0.0) == 1
        assert sink.recorded == readings[1:]
        assert outbox.dropped == 1
        assert len(outbox) == 0

    def test_full_queue_drops_oldest(self, make_reading):
        outbox = OutboundQueue(maxlen=2)
        readings = [make_reading(6.0, 90.0, minute=i) for i in range(3)]
        for reading in readings:
            outbox.enqueue(reading, now=0.0)
        sink = RecordingSink()

        assert outbox.dropped == 1
        assert outbox.flush(sink, now=0.0) == 2
        assert sink.recorded == readings[1:]

    def test_flush_respects_limit(self, make_reading):
        outbox = OutboundQueue()
        for i in range(8):
            outbox.enqueue(make_reading(6.0, 90.0, minute=i), now=0.0)

        assert outbox.flush(RecordingSink(), now=0.0, limit=5) == 5
        assert len(outbox) == 3


class TestHttpCollaborators:

    def test_sink_posts_reading_with_api_key(self, make_reading):
        session = MagicMock()
        session.post.return_value.status_code = 201
        session.post.return_value.json.return_value = {'success': True}
        reading = make_reading(6.0, 90.0)

        result = HttpReadingSink('http://silo.local:5000/', 'secret', session=session).record(reading)

        assert result == {'success': True}
        args, kwargs = session.post.call_args
        assert args[0] == 'http://silo.local:5000/api/data'
        assert kwargs['headers']['x-api-key'] == 'secret'
        assert kwargs['json']['deviceId'] == 'SILO-T'
        assert kwargs['timeout'] == 10

    def test_sink_connection_error(self, make_reading):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(DeliveryError):
            HttpReadingSink('http://silo.local', 'secret', session=session).record(make_reading(6.0, 90.0))

    def test_sink_server_error_is_retryable(self, make_reading):
        session = MagicMock()
        session.post.return_value.status_code = 500

        with pytest.raises(DeliveryError) as excinfo:
            HttpReadingSink('http://silo.local', 'secret', session=session).record(make_reading(6.0, 90.0))
        assert not isinstance(excinfo.value, ReadingRejectedError)

    def test_sink_client_error_is_rejection(self, make_reading):
        session = MagicMock()
        session.post.return_value.status_code = 400
        session.post.return_value.text = '{"error": "temperature must be a number"}'

        with pytest.raises(ReadingRejectedError):
            HttpReadingSink('http://silo.local', 'secret', session=session).record(make_reading(6.0, 90.0))

    def test_non_json_acknowledgement_counts_as_delivered(self, make_reading):
        session = MagicMock()
        session.post.return_value.status_code = 200
        session.post.return_value.json.side_effect = ValueError("Expecting value")
        sink = HttpReadingSink('http://silo.local', 'secret', session=session)

        assert sink.record(make_reading(6.0, 90.0)) == {}

        agent = make_agent(ScriptedSensor(COOL_SAMPLE), sink)
        assert agent.run_cycle(now=0.0) is not None
        assert len(agent.outbox) == 0

    def test_config_source_parses_document(self):
        session = MagicMock()
        session.get.return_value.json.return_value = {'alerts': {'criticalRiskThreshold': 80}, 'version': 3}

        config = HttpConfigSource('http://silo.local', session=session).fetch()

        assert config.version == 3
        assert config.alerts.critical_risk_threshold == 80.0
        session.get.assert_called_once_with('http://silo.local/api/config', timeout=10)

    def test_config_source_invalid_document(self):
        session = MagicMock()
        session.get.return_value.json.return_value = {'alerts': {'clearRiskThreshold': 90}}

        with pytest.raises(ConfigFetchError):
            HttpConfigSource('http://silo.local', session=session).fetch()

    def test_config_source_timeout(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(ConfigFetchError):
            HttpConfigSource('http://silo.local', session=session).fetch()


class TestSimulatedSensor:

    def test_samples_are_plausible(self):
        sensor = SimulatedSensor(rng=random.Random(7))
        for _ in range(50):
            sample = sensor.sample()
            assert 4 <= sample.temperature <= 16
            assert 86 <= sample.humidity <= 97

    def test_failure_rate(self):
        with pytest.raises(SensorReadError):
            SimulatedSensor(failure_rate=1.0).sample()
