"""Registry and fleet link over the in-process loopback"""

import asyncio

import pytest

from fleetsync.exceptions import TransportClosed
from fleetsync.models import AdminAction, DeviceIdentity, JobStatus, MetricsSnapshot, Phase
from fleetsync.services import DiagnosticsService
from fleetsync.sync import CentralRegistry, FleetLink, LoopbackTransport, MessageType, Transport
from fleetsync.sync import protocol
from fleetsync.utils import Backoff

SITE = "site-lyon-01"


async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_link(transport_factory, identity_source, executor, **kwargs):
    kwargs.setdefault('heartbeat_interval', 0.05)
    kwargs.setdefault('auth_timeout', 1)
    kwargs.setdefault('backoff', Backoff(initial=0.01, maximum=0.05))
    return FleetLink(transport_factory, identity_source, executor, **kwargs)


async def stop(link, task):
    link.stop()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class ScriptedTransport(Transport):
    """Accepts any credentials; the test pushes registry frames into ``inbox``"""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []

    async def connect(self):
        pass

    async def send(self, message):
        self.sent.append(message)
        if message.type == MessageType.AUTHENTICATE:
            await self.inbox.put(protocol.authenticated(message.data['siteId']))

    async def receive(self):
        message = await self.inbox.get()
        if message is None:
            raise TransportClosed("closed by test")
        return message

    async def close(self):
        pass

    def sent_of(self, message_type):
        return [m for m in self.sent if m.type == message_type]


# ============ Registry ============

def test_wrong_key_gets_auth_error_and_no_traffic_is_accepted():
    async def scenario():
        registry = CentralRegistry()
        registry.register_site(SITE)
        endpoint = registry.open_connection()

        await endpoint.send(protocol.authenticate(DeviceIdentity(site_id=SITE, api_key="guess")))
        reply = await endpoint.receive()

        await endpoint.send(protocol.heartbeat(SITE))
        await endpoint.send(protocol.command_result("cmd-1", protocol.ResultStatus.SUCCEEDED))
        await asyncio.sleep(0.05)
        with pytest.raises(TransportClosed):
            await endpoint.receive()

        await registry.close()
        return registry, reply

    registry, reply = asyncio.run(scenario())

    assert reply.type == MessageType.AUTH_ERROR
    assert registry.last_heartbeat(SITE) is None
    assert registry.results(SITE) == []
    assert registry.is_online(SITE) is False


def test_first_frame_must_authenticate():
    async def scenario():
        registry = CentralRegistry()
        registry.register_site(SITE)
        endpoint = registry.open_connection()
        await endpoint.send(protocol.heartbeat(SITE))
        reply = await endpoint.receive()
        await registry.close()
        return registry, reply

    registry, reply = asyncio.run(scenario())
    assert reply.type == MessageType.AUTH_ERROR
    assert registry.last_heartbeat(SITE) is None


def test_unknown_site_is_refused():
    registry = CentralRegistry()
    assert registry.verify("nobody", "key") is False


def test_site_cannot_be_registered_twice():
    registry = CentralRegistry()
    registry.register_site(SITE)
    with pytest.raises(ValueError):
        registry.register_site(SITE)


def test_unacknowledged_command_is_redelivered_after_reauth():
    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))

        first = registry.open_connection()
        await first.send(protocol.authenticate(identity))
        assert (await first.receive()).type == MessageType.AUTHENTICATED
        await registry.send_command(SITE, {'id': 'cmd-7', 'action': 'build:raspberry'})
        delivered = await first.receive()
        first.close()
        await wait_until(lambda: not registry.is_online(SITE))

        second = registry.open_connection()
        await second.send(protocol.authenticate(identity))
        assert (await second.receive()).type == MessageType.AUTHENTICATED
        redelivered = await second.receive()

        await second.send(protocol.command_result('cmd-7', protocol.ResultStatus.SUCCEEDED, "ok"))
        await wait_until(lambda: not registry.pending_commands(SITE))
        await registry.close()
        return delivered, redelivered

    delivered, redelivered = asyncio.run(scenario())
    assert delivered.type == redelivered.type == MessageType.COMMAND
    assert delivered.data['id'] == redelivered.data['id'] == 'cmd-7'


def test_sweep_marks_silent_sites_offline():
    now = [1000.0]

    async def scenario():
        registry = CentralRegistry(stale_after=90, clock=lambda: now[0])
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        endpoint = registry.open_connection()
        await endpoint.send(protocol.authenticate(identity))
        await endpoint.receive()
        await endpoint.send(protocol.heartbeat(SITE))
        await wait_until(lambda: registry.last_heartbeat(SITE) is not None)

        assert registry.sweep_stale(now=1050.0) == []
        stale = registry.sweep_stale(now=1100.0)
        await registry.close()
        return registry, stale

    registry, stale = asyncio.run(scenario())
    assert stale == [SITE]
    assert registry.is_online(SITE) is False


# ============ Fleet link ============

def test_link_authenticates_and_sends_heartbeats(make_executor):
    diagnostics = DiagnosticsService()

    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        link = make_link(lambda i: LoopbackTransport(registry), lambda: identity, make_executor(),
                         diagnostics=diagnostics)
        task = asyncio.create_task(link.run())

        await wait_until(lambda: registry.last_heartbeat(SITE) is not None)
        online = registry.is_online(SITE)
        state = diagnostics.link_state
        await stop(link, task)
        await registry.close()
        return online, state

    online, state = asyncio.run(scenario())
    assert online is True
    assert state == "online"
    assert diagnostics.counters['heartbeats_sent'] >= 1


def test_bad_credentials_keep_retrying(make_executor):
    diagnostics = DiagnosticsService()

    async def scenario():
        registry = CentralRegistry()
        registry.register_site(SITE)
        wrong = DeviceIdentity(site_id=SITE, api_key="stale-key")
        link = make_link(lambda i: LoopbackTransport(registry), lambda: wrong, make_executor(),
                         diagnostics=diagnostics)
        task = asyncio.create_task(link.run())

        await wait_until(lambda: diagnostics.counters['auth_failures'] >= 2)
        online = registry.is_online(SITE)
        await stop(link, task)
        await registry.close()
        return registry, online

    registry, online = asyncio.run(scenario())
    assert online is False
    assert diagnostics.link_state == "connecting"
    assert diagnostics.last_auth_error == "Invalid credentials"
    assert registry.last_heartbeat(SITE) is None


def test_command_round_trip(make_executor):
    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        executor = make_executor()
        link = make_link(lambda i: LoopbackTransport(registry), lambda: identity, executor)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: registry.is_online(SITE))

        await registry.send_command(SITE, {'id': 'cmd-1', 'action': 'build:central', 'requestedBy': 'ops'})
        await wait_until(lambda: registry.results(SITE))

        await stop(link, task)
        await registry.close()
        return registry, executor

    registry, executor = asyncio.run(scenario())
    [result] = registry.results(SITE)
    assert result['id'] == 'cmd-1'
    assert result['status'] == 'succeeded'
    assert registry.pending_commands(SITE) == []
    assert executor.job_for_command('cmd-1').requested_by == 'ops'


def test_command_queued_while_offline_is_delivered_on_connect(make_executor):
    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        await registry.send_command(SITE, {'id': 'cmd-offline', 'action': 'tests:full'})
        assert len(registry.pending_commands(SITE)) == 1

        link = make_link(lambda i: LoopbackTransport(registry), lambda: identity, make_executor())
        task = asyncio.create_task(link.run())
        await wait_until(lambda: registry.results(SITE))
        await stop(link, task)
        await registry.close()
        return registry

    registry = asyncio.run(scenario())
    assert [r['id'] for r in registry.results(SITE)] == ['cmd-offline']
    assert registry.pending_commands(SITE) == []


def test_key_rotation_invalidates_old_key(make_executor):
    diagnostics = DiagnosticsService()

    async def scenario():
        registry = CentralRegistry()
        holder = [DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))]
        link = make_link(lambda i: LoopbackTransport(registry), lambda: holder[0], make_executor(),
                         diagnostics=diagnostics)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        new_key = registry.issue_key(SITE)
        await wait_until(lambda: diagnostics.counters['auth_failures'] >= 1)
        assert not registry.verify(SITE, holder[0].api_key)

        holder[0] = DeviceIdentity(site_id=SITE, api_key=new_key)
        await wait_until(lambda: link.is_authenticated and registry.is_online(SITE))
        await stop(link, task)
        await registry.close()

    asyncio.run(scenario())
    assert diagnostics.counters['auth_failures'] >= 1


def test_metrics_reach_the_registry(make_executor):
    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        link = make_link(lambda i: LoopbackTransport(registry), lambda: identity, make_executor())

        offline_result = link.publish_metrics(MetricsSnapshot(timestamp=MetricsSnapshot.now()))
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        link.publish_metrics(MetricsSnapshot(timestamp=MetricsSnapshot.now(), cpu_percent=10.0))
        link.publish_metrics(MetricsSnapshot(timestamp=MetricsSnapshot.now(), cpu_percent=55.5))
        await wait_until(lambda: registry.latest_metrics(SITE) is not None)
        await stop(link, task)
        await registry.close()
        return offline_result, registry.latest_metrics(SITE)

    offline_result, metrics = asyncio.run(scenario())
    assert offline_result is False
    # the outbox keeps only the latest snapshot
    assert metrics['cpu'] == 55.5


def test_phase_change_is_forwarded(make_executor):
    applied = []

    async def scenario():
        registry = CentralRegistry()
        identity = DeviceIdentity(site_id=SITE, api_key=registry.register_site(SITE))
        link = make_link(lambda i: LoopbackTransport(registry), lambda: identity, make_executor(),
                         on_phase_change=lambda p: applied.append(Phase.parse(p)))
        assert await registry.send_phase_change(SITE, Phase.DURING) is False

        task = asyncio.create_task(link.run())
        await wait_until(lambda: registry.is_online(SITE))
        assert await registry.send_phase_change(SITE, Phase.DURING) is True
        await registry.send_phase_change(SITE, "overtime")
        await registry.send_phase_change(SITE, "after")
        await wait_until(lambda: len(applied) == 2)
        await stop(link, task)
        await registry.close()

    asyncio.run(scenario())
    assert applied == [Phase.DURING, Phase.AFTER]


def test_invalid_command_is_rejected_over_the_link(make_executor):
    transport = ScriptedTransport()

    async def scenario():
        executor = make_executor()
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(lambda i: transport, lambda: identity, executor)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        await transport.inbox.put(protocol.Message(
            type=MessageType.COMMAND, data={'id': 'cmd-bad', 'action': 'shell:exec'},
        ))
        await wait_until(lambda: transport.sent_of(MessageType.COMMAND_RESULT))
        await stop(link, task)
        return executor

    executor = asyncio.run(scenario())
    [result] = transport.sent_of(MessageType.COMMAND_RESULT)
    assert result.data['id'] == 'cmd-bad'
    assert result.data['status'] == 'rejected'
    assert executor.list_jobs() == []


def test_non_string_command_id_is_rejected_without_dropping_the_link(make_executor):
    transport = ScriptedTransport()
    connections = []

    def factory(identity):
        connections.append(identity)
        return transport

    async def scenario():
        executor = make_executor()
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(factory, lambda: identity, executor)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        await transport.inbox.put(protocol.Message(
            type=MessageType.COMMAND, data={'id': 42, 'action': 'build:central'},
        ))
        await wait_until(lambda: transport.sent_of(MessageType.COMMAND_RESULT))
        still_authenticated = link.is_authenticated
        await stop(link, task)
        return executor, still_authenticated

    executor, still_authenticated = asyncio.run(scenario())
    [result] = transport.sent_of(MessageType.COMMAND_RESULT)
    assert result.data['id'] == '42'
    assert result.data['status'] == 'rejected'
    assert still_authenticated is True
    assert len(connections) == 1
    assert executor.list_jobs() == []


def test_duplicate_delivery_resends_result_without_rerunning(make_executor):
    transport = ScriptedTransport()

    async def scenario():
        executor = make_executor()
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(lambda i: transport, lambda: identity, executor)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        command = protocol.Message(type=MessageType.COMMAND, data={'id': 'cmd-9', 'action': 'tests:full'})
        await transport.inbox.put(command)
        await wait_until(lambda: len(transport.sent_of(MessageType.COMMAND_RESULT)) == 1)
        await transport.inbox.put(command)
        await wait_until(lambda: len(transport.sent_of(MessageType.COMMAND_RESULT)) == 2)
        await stop(link, task)
        return executor

    executor = asyncio.run(scenario())
    assert len(executor.list_jobs()) == 1
    assert executor.job_for_command('cmd-9').status == JobStatus.SUCCEEDED
    results = transport.sent_of(MessageType.COMMAND_RESULT)
    assert [r.data['status'] for r in results] == ['succeeded', 'succeeded']


def test_results_finished_while_offline_are_sent_after_reconnect(make_executor):
    transport = ScriptedTransport()

    async def scenario():
        gate = asyncio.Event()

        async def slow(job, log):
            await gate.wait()
            return "done"

        executor = make_executor(runners={action: slow for action in AdminAction})
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(lambda i: transport, lambda: identity, executor,
                         backoff=Backoff(initial=0.3, maximum=0.3, jitter=0))
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        await transport.inbox.put(protocol.Message(
            type=MessageType.COMMAND, data={'id': 'cmd-slow', 'action': 'deploy:raspberry'},
        ))
        await wait_until(lambda: executor.job_for_command('cmd-slow') is not None)

        # drop the connection, finish the job while offline
        await transport.inbox.put(None)
        await wait_until(lambda: not link.is_authenticated)
        gate.set()
        await executor.wait_idle()

        await wait_until(lambda: transport.sent_of(MessageType.COMMAND_RESULT))
        await stop(link, task)

    asyncio.run(scenario())
    [result] = transport.sent_of(MessageType.COMMAND_RESULT)
    assert result.data['id'] == 'cmd-slow'
    assert result.data['status'] == 'succeeded'

class SilentTransport(ScriptedTransport):
    """Accepts the authenticate frame and never answers it"""

    async def send(self, message):
        self.sent.append(message)


def test_unanswered_authentication_times_out_and_retries(make_executor):
    diagnostics = DiagnosticsService()
    transports = []

    def factory(identity):
        transports.append(SilentTransport())
        return transports[-1]

    async def scenario():
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(factory, lambda: identity, make_executor(), diagnostics=diagnostics,
                         auth_timeout=0.05)
        task = asyncio.create_task(link.run())
        await wait_until(lambda: len(transports) >= 3)
        authenticated = link.is_authenticated
        await stop(link, task)
        return authenticated

    authenticated = asyncio.run(scenario())
    assert authenticated is False
    assert diagnostics.link_state == "connecting"
    assert diagnostics.counters['heartbeats_sent'] == 0
    for transport in transports:
        assert transport.sent_of(MessageType.HEARTBEAT) == []
        assert [m.type for m in transport.sent] in ([], [MessageType.AUTHENTICATE])


class StallingMetricsTransport(ScriptedTransport):
    """Never completes a metrics send"""

    async def send(self, message):
        if message.type == MessageType.METRICS:
            self.sent.append(message)
            await asyncio.Event().wait()
        await super().send(message)


def test_snapshot_queued_before_disconnect_is_not_sent_later(make_executor):
    transports = []

    def factory(identity):
        transports.append(ScriptedTransport() if transports else StallingMetricsTransport())
        return transports[-1]

    async def scenario():
        identity = DeviceIdentity(site_id=SITE, api_key="k")
        link = make_link(factory, lambda: identity, make_executor())
        task = asyncio.create_task(link.run())
        await wait_until(lambda: link.is_authenticated)

        link.publish_metrics(MetricsSnapshot(timestamp=MetricsSnapshot.now(), cpu_percent=10.0))
        await wait_until(lambda: transports[0].sent_of(MessageType.METRICS))
        assert link.publish_metrics(MetricsSnapshot(timestamp=MetricsSnapshot.now(), cpu_percent=20.0))

        await transports[0].inbox.put(None)
        await wait_until(lambda: len(transports) == 2 and link.is_authenticated)
        await wait_until(lambda: transports[1].sent_of(MessageType.HEARTBEAT))
        await asyncio.sleep(0.1)
        await stop(link, task)

    asyncio.run(scenario())
    assert transports[1].sent_of(MessageType.METRICS) == []
