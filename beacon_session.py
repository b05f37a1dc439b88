"""
BeaconSession: one bracelet from first sighting through every reconnect.

The session is a state machine fed through a single inbox. Transport
requests run as tasks whose completion (or failure) comes back as an inbox
event, so every field of the session is only ever touched by its worker.

Connection lifecycle:
    DISCOVERED -> CONNECTING -> DISCOVERING_SERVICES
               -> DISCOVERING_CHARACTERISTICS -> READY
    link loss from any live state -> RECONNECTING -> CONNECTING ...

Sampling loop (READY and tracking requested):
    collect a batch of RSSI readings (budget or watchdog window, whichever
    comes first) -> distance -> range state machine -> alerts, then the next
    batch after IN_RANGE_REFRESH_S while in range, immediately while out.
    A batch aborted by a read failure is retried after ABORT_RETRY_S.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import config
from alerts import AlertDispatcher
from ble_device import (
    BeaconIdentity,
    CharacteristicHandles,
    ConnectionState,
    PairingInput,
    SamplingSession,
)
from notification_handler import (
    PayloadError,
    history_entry,
    parse_battery_level,
    parse_tx_power,
    parse_worn_code,
)
from proximity import estimate_distance, format_distance
from state_machines import RangeEventKind, RangeStateMachine, WornStateMachine
from transport import (
    BATTERY_SERVICE,
    IMMEDIATE_ALERT_SERVICE,
    LINK_LOSS_SERVICE,
    TX_POWER_SERVICE,
    Transport,
    TransportError,
    normalize_uuid,
    tracked_services,
)

logger = logging.getLogger(__name__)

RECONNECT_DELAY_S = 2.0
HISTORY_LIMIT = 100


# ============================================================================
# Inbox events
# ============================================================================

class InboxEvent:
    # Connection attempt the event belongs to; None for events that are
    # valid whatever the connection (user requests, link loss)
    generation = None


@dataclass
class ConnectRequested(InboxEvent):
    handle: str


@dataclass
class ConnectCompleted(InboxEvent):
    pass


@dataclass
class ConnectFailed(InboxEvent):
    error: str


@dataclass
class ServicesDiscovered(InboxEvent):
    services: List[str]


@dataclass
class CharacteristicsDiscovered(InboxEvent):
    service: str
    characteristics: List[str]


@dataclass
class ValueRead(InboxEvent):
    characteristic: str
    data: bytes


@dataclass
class RequestCompleted(InboxEvent):
    operation: str


@dataclass
class RequestFailed(InboxEvent):
    operation: str
    error: str
    service: Optional[str] = None


@dataclass
class NotificationReceived(InboxEvent):
    characteristic: str
    data: bytes


@dataclass
class LinkLost(InboxEvent):
    pass


@dataclass
class TrackRequested(InboxEvent):
    pass


@dataclass
class BatchReady(InboxEvent):
    samples: List[int] = field(default_factory=list)


@dataclass
class BatchAborted(InboxEvent):
    reason: str


@dataclass
class NextBatchDue(InboxEvent):
    pass


@dataclass
class CommandRequested(InboxEvent):
    command: str


@dataclass
class Shutdown(InboxEvent):
    pass


@dataclass
class SessionEvent:
    """Event a session reports to the registry."""
    kind: str                   # connected | connect_failed | link_lost | battery_reported | tracking_started
    name: str
    detail: Optional[str] = None


# ============================================================================
# Batch collection
# ============================================================================

async def collect_batch(transport: Transport, handle: str, sampling: SamplingSession) -> List[int]:
    """
    Collect one batch of RSSI readings.

    Reads as fast as the transport allows (no faster than
    sampling.interval_s) until the sample budget is met or sampling.window_s
    elapses. A watchdog expiry keeps whatever was collected.

    Raises:
        TransportError: A read failed; the batch is aborted
    """
    async def fill():
        while not sampling.add(await transport.read_signal_strength(handle)):
            if sampling.interval_s > 0:
                await asyncio.sleep(sampling.interval_s)

    try:
        await asyncio.wait_for(fill(), timeout=sampling.window_s)
    except asyncio.TimeoutError:
        pass
    finally:
        batch = sampling.flush()
    return batch


# ============================================================================
# Session
# ============================================================================

class BeaconSession:
    """
    Args:
        identity: Registry-assigned identity of the beacon
        pairing: Pairing input the beacon was found with
        handle: Transport handle of the sighting
        transport: BLE transport
        dispatcher: Alert dispatcher
        emit: Callback receiving SessionEvents (the registry inbox)
        tracking: Tracking parameters
        auto_track: Start sampling as soon as the session is READY
    """

    def __init__(self, identity: BeaconIdentity, pairing: PairingInput, handle: str,
                 transport: Transport, dispatcher: AlertDispatcher,
                 emit: Callable[[SessionEvent], None],
                 tracking: Optional[config.TrackingConfig] = None, auto_track: bool = True,
                 reconnect_delay: float = RECONNECT_DELAY_S):
        self.identity = identity
        self.pairing = pairing
        self.address = handle
        self.transport = transport
        self.dispatcher = dispatcher
        self.tracking = tracking or config.TrackingConfig()
        self.tracking_requested = auto_track
        self.reconnect_delay = reconnect_delay
        self._emit = emit

        self.connection_state = ConnectionState.DISCOVERED
        self.handles = CharacteristicHandles()
        self.sampling = SamplingSession(
            num_samples=self.tracking.num_samples,
            interval_s=self.tracking.sample_interval_s,
            window_s=self.tracking.sample_window_s,
        )
        self.range = RangeStateMachine(self.tracking.max_distance_mm,
                                       self.tracking.debounce_threshold)
        self.worn = WornStateMachine(self.tracking.worn_event_codes)
        self.battery_level: Optional[int] = None
        self.distance_mm: Optional[float] = None
        self.distance_text = ""
        self.batches_completed = 0
        self.link_losses = 0
        self.notification_history = deque(maxlen=HISTORY_LIMIT)

        self.inbox: asyncio.Queue = asyncio.Queue()
        self._generation = 0
        self._pending_services = set()
        self._has_been_ready = False
        self._worker: Optional[asyncio.Task] = None
        self._batch_task: Optional[asyncio.Task] = None
        self._refresh_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._requests = set()
        self._closing = False

    @property
    def name(self):
        return self.identity.name

    @property
    def ready(self):
        return self.connection_state is ConnectionState.READY

    # ------------------------------------------------------------------
    # Public API (safe to call from the event loop, any task)
    # ------------------------------------------------------------------

    def start(self):
        """Start the worker and the first connection attempt."""
        if self._worker is None:
            self._worker = asyncio.create_task(self.run(), name=f"session-{self.name}")
        self.post(ConnectRequested(self.address))

    def post(self, event: InboxEvent):
        self.inbox.put_nowait(event)

    def request_tracking(self):
        self.post(TrackRequested())

    def reconnect(self, handle: Optional[str] = None):
        """Connect again, optionally to a new handle for the same beacon."""
        self.post(ConnectRequested(handle or self.address))

    def link_lost(self):
        self.post(LinkLost())

    def send_command(self, command: str):
        """
        Queue a hardware command write to the identify characteristic.

        Raises:
            KeyError: Unknown command name
        """
        if command not in self.tracking.command_bytes:
            raise KeyError(f"Unknown command: {command}")
        self.post(CommandRequested(command))

    def cancel_sampling(self):
        """Cancel the in-flight batch and any pending refresh timer."""
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
        self._batch_task = None
        self.sampling.running = False
        self.sampling.flush()

    def stop(self):
        """Cancel sampling for good; from now on the worker only honours Shutdown."""
        self._closing = True
        self.cancel_sampling()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    async def shutdown(self):
        """Stop sampling, drop the connection and stop the worker."""
        self.stop()
        if self._worker is None:
            await self._teardown()
            return
        self.post(Shutdown())
        await self._worker

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def run(self):
        while True:
            event = await self.inbox.get()
            if isinstance(event, Shutdown):
                await self._teardown()
                return
            if self._closing:
                continue
            if event.generation is not None and event.generation != self._generation:
                logger.debug(f"[TRACK] {self.name}: dropped stale {type(event).__name__}")
                continue
            try:
                await self._handle(event)
            except Exception:
                logger.exception(f"[TRACK] {self.name}: error handling {type(event).__name__}")

    async def _handle(self, event: InboxEvent):
        handler = getattr(self, f"_on_{type(event).__name__}")
        result = handler(event)
        if asyncio.iscoroutine(result):
            await result

    async def _teardown(self):
        self.cancel_sampling()
        for task in list(self._requests):
            task.cancel()
        self._generation += 1
        handle = self.identity.handle or self.address
        self.connection_state = ConnectionState.DISCONNECTED
        self.identity.handle = None
        try:
            await self.transport.disconnect(handle)
        except TransportError as e:
            logger.warning(f"[BLE] Disconnect error for {self.name}: {e}")
        logger.info(f"[BLE] Session closed for {self.name}")

    def _request(self, coro, on_success, on_failure):
        """Run a transport request; its outcome comes back through the inbox."""
        generation = self._generation

        async def runner():
            try:
                result = await coro
            except TransportError as e:
                event = on_failure(str(e))
            else:
                event = on_success(result)
            event.generation = generation
            self.post(event)

        task = asyncio.create_task(runner())
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _on_ConnectRequested(self, event: ConnectRequested):
        if self.connection_state in (ConnectionState.CONNECTING,
                                     ConnectionState.DISCOVERING_SERVICES,
                                     ConnectionState.DISCOVERING_CHARACTERISTICS,
                                     ConnectionState.READY):
            logger.debug(f"[BLE] {self.name}: already {self.connection_state.value}")
            return
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        self.cancel_sampling()
        self._generation += 1
        self.address = event.handle
        self.connection_state = ConnectionState.CONNECTING
        logger.info(f"[BLE] Connecting to {self.name} ({self.address}), "
                    f"pairing {self.pairing.identifier}")
        self._request(
            self.transport.connect(self.address),
            lambda _: ConnectCompleted(),
            ConnectFailed,
        )

    def _on_ConnectCompleted(self, event: ConnectCompleted):
        self.identity.handle = self.address
        self.connection_state = ConnectionState.DISCOVERING_SERVICES
        logger.info(f"[BLE] Connected to {self.name}")
        self._request(
            self.transport.discover_services(self.address, tracked_services(self.pairing.identifier)),
            ServicesDiscovered,
            lambda error: RequestFailed("discover_services", error),
        )

    def _on_ConnectFailed(self, event: ConnectFailed):
        if self._has_been_ready:
            # Lost link we are trying to get back; keep trying quietly
            self.connection_state = ConnectionState.RECONNECTING
            logger.info(f"[BLE] Reconnect to {self.name} failed ({event.error}), "
                        f"retrying in {self.reconnect_delay}s")
            loop = asyncio.get_running_loop()
            self._reconnect_timer = loop.call_later(
                self.reconnect_delay, self.post, ConnectRequested(self.address))
            return

        self.connection_state = ConnectionState.DISCONNECTED
        logger.warning(f"[BLE] Couldn't connect to {self.name}: {event.error}")
        self._emit(SessionEvent("connect_failed", self.name, event.error))

    def _on_ServicesDiscovered(self, event: ServicesDiscovered):
        self.connection_state = ConnectionState.DISCOVERING_CHARACTERISTICS
        self._pending_services = {normalize_uuid(s) for s in event.services}
        logger.info(f"[BLE] {self.name}: discovered {len(event.services)} service(s)")
        if not self._pending_services:
            self._become_ready()
            return
        for service in event.services:
            self._request(
                self.transport.discover_characteristics(self.address, service),
                lambda chars, service=service: CharacteristicsDiscovered(service, chars),
                lambda error, service=service: RequestFailed("discover_characteristics",
                                                             error, service),
            )

    def _on_CharacteristicsDiscovered(self, event: CharacteristicsDiscovered):
        service = normalize_uuid(event.service)
        self._pending_services.discard(service)
        if not event.characteristics:
            logger.warning(f"[BLE] {self.name}: service {service} has no characteristics")
        else:
            self._assign_characteristic(service, event.characteristics[0])
        if not self._pending_services and not self.ready:
            self._become_ready()

    def _assign_characteristic(self, service, characteristic):
        if service == IMMEDIATE_ALERT_SERVICE:
            self.handles.immediate_alert = characteristic
        elif service == LINK_LOSS_SERVICE:
            self.handles.link_loss = characteristic
        elif service == TX_POWER_SERVICE:
            self.handles.tx_power = characteristic
            self._read(characteristic)
        elif service == BATTERY_SERVICE:
            self.handles.battery = characteristic
            self._subscribe(characteristic)
            self._read(characteristic)
        elif service == normalize_uuid(self.pairing.identifier):
            self.handles.identify = characteristic
            self._subscribe(characteristic)
        else:
            logger.debug(f"[BLE] {self.name}: ignoring service {service}")

    def _read(self, characteristic):
        self._request(
            self.transport.read_value(self.address, characteristic),
            lambda data: ValueRead(characteristic, data),
            lambda error: RequestFailed(f"read {characteristic}", error),
        )

    def _subscribe(self, characteristic):
        self._request(
            self.transport.subscribe_notifications(self.address, characteristic),
            lambda _: RequestCompleted(f"subscribe {characteristic}"),
            lambda error: RequestFailed(f"subscribe {characteristic}", error),
        )

    def _become_ready(self):
        self.connection_state = ConnectionState.READY
        first = not self._has_been_ready
        self._has_been_ready = True
        logger.info(f"[BLE] {self.name} ready" + ("" if first else " (reconnected)"))
        self._emit(SessionEvent("connected", self.name))
        self._write_command("connected_default")
        if self.tracking_requested:
            self._start_batch()

    def _on_RequestFailed(self, event: RequestFailed):
        logger.warning(f"[BLE] {self.name}: {event.operation} failed: {event.error}")
        if event.operation == "discover_services":
            # Nothing to talk to; still track by RSSI alone
            self._pending_services.clear()
            self._become_ready()
        elif event.operation == "discover_characteristics" and event.service:
            self._pending_services.discard(normalize_uuid(event.service))
            if not self._pending_services and not self.ready:
                self._become_ready()

    def _on_LinkLost(self, event: LinkLost):
        if self.connection_state in (ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING):
            return
        self.cancel_sampling()
        self._generation += 1
        self.link_losses += 1
        self.identity.handle = None
        self.handles = CharacteristicHandles()
        self._pending_services.clear()
        self.connection_state = ConnectionState.RECONNECTING
        logger.warning(f"[BLE] Link lost to {self.name}, reconnecting")
        self._emit(SessionEvent("link_lost", self.name))

    # ------------------------------------------------------------------
    # Characteristic data
    # ------------------------------------------------------------------

    def _on_ValueRead(self, event: ValueRead):
        self._apply_value(event.characteristic, event.data)

    def _on_NotificationReceived(self, event: NotificationReceived):
        self.notification_history.append(history_entry(event.characteristic, event.data))
        self._apply_value(event.characteristic, event.data)

    def _apply_value(self, characteristic, data):
        try:
            if characteristic == self.handles.tx_power:
                self.sampling.tx_power = parse_tx_power(data)
                logger.info(f"[BLE] {self.name}: tx power {self.sampling.tx_power}")
            elif characteristic == self.handles.battery:
                self.battery_level = parse_battery_level(data)
                logger.info(f"[BLE] {self.name}: battery {self.battery_level}%")
                self._emit(SessionEvent("battery_reported", self.name, str(self.battery_level)))
            elif characteristic == self.handles.identify:
                state = self.worn.apply(parse_worn_code(data))
                logger.info(f"[TRACK] {self.name}: bracelet {state.value}")
                self.dispatcher.on_worn_change(self.identity, state)
            else:
                logger.debug(f"[BLE] {self.name}: unhandled value from {characteristic}")
        except (PayloadError, ValueError) as e:
            logger.warning(f"[BLE] {self.name}: discarded payload {bytes(data).hex()!r}: {e}")

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _on_TrackRequested(self, event: TrackRequested):
        self.tracking_requested = True
        if self.ready:
            self._start_batch()

    def _on_NextBatchDue(self, event: NextBatchDue):
        self._refresh_timer = None
        if self.ready and self.tracking_requested:
            self._start_batch()

    def _start_batch(self):
        if self.sampling.running or self._refresh_timer is not None:
            return
        self.sampling.running = True
        generation = self._generation
        self._batch_task = asyncio.create_task(self._collect(generation))

    async def _collect(self, generation):
        try:
            samples = await collect_batch(self.transport, self.address, self.sampling)
        except TransportError as e:
            event = BatchAborted(str(e))
        else:
            event = BatchReady(samples)
        event.generation = generation
        self.post(event)

    def _on_BatchAborted(self, event: BatchAborted):
        self.sampling.running = False
        self._batch_task = None
        logger.debug(f"[TRACK] {self.name}: batch aborted: {event.reason}")
        # Back off even while out of range; a dead link fails every read at once
        self._schedule_next_batch(self.tracking.abort_retry_s)

    def _on_BatchReady(self, event: BatchReady):
        self.sampling.running = False
        self._batch_task = None
        if not event.samples:
            logger.debug(f"[TRACK] {self.name}: empty batch")
        elif self.sampling.tx_power is None:
            logger.info(f"[TRACK] {self.name}: tx power not known yet, batch skipped")
        else:
            self._classify(event.samples)
        self._schedule_next_batch()

    def _classify(self, samples):
        tx_power = self.sampling.tx_power
        distance = estimate_distance(samples, tx_power, self.tracking.path_loss_exponent)
        self.distance_mm = distance
        self.distance_text = format_distance(distance)
        self.batches_completed += 1
        logger.info(f"[TRACK] {self.name}: {len(samples)} samples, tx {tx_power}, "
                    f"distance {self.distance_text}")
        if self.batches_completed == 1:
            self._emit(SessionEvent("tracking_started", self.name))

        event = self.range.update(distance)
        if event is None:
            return
        if event.kind is RangeEventKind.CONFIRMED_OUT:
            logger.warning(f"[TRACK] {self.name} OUT OF RANGE at {self.distance_text}")
            if event.first_transition:
                self._write_command("out_of_range")
        else:
            logger.info(f"[TRACK] {self.name} back in range at {self.distance_text}")
            self._write_command("back_in_range")
        self.dispatcher.on_range_event(self.identity, event)

    def _schedule_next_batch(self, delay: Optional[float] = None):
        if not (self.ready and self.tracking_requested):
            return
        if delay is None:
            delay = self.tracking.in_range_refresh_s if self.range.in_range else 0
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._refresh_timer = loop.call_later(delay, self.post, NextBatchDue())
        else:
            self._start_batch()

    # ------------------------------------------------------------------
    # Hardware commands
    # ------------------------------------------------------------------

    def _on_CommandRequested(self, event: CommandRequested):
        if not self.ready:
            logger.warning(f"[BLE] {self.name}: not ready, dropped command {event.command}")
            return
        self._write_command(event.command)

    def _write_command(self, command):
        if self.handles.identify is None:
            logger.debug(f"[BLE] {self.name}: no identify characteristic for {command}")
            return
        value = self.tracking.command_bytes[command]
        logger.info(f"[SEND] {self.name}: {command} (0x{value:02x})")
        self._request(
            self.transport.write_value(self.address, self.handles.identify, value, True),
            lambda _: RequestCompleted(f"write {command}"),
            lambda error: RequestFailed(f"write {command}", error),
        )

    def _on_RequestCompleted(self, event: RequestCompleted):
        logger.debug(f"[BLE] {self.name}: {event.operation} done")
