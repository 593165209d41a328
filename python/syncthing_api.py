'''
syncthing_api - Core class for interacting with Syncthing (REST + Event API)

Maintains an in-memory model of the daemon's folders and devices and keeps it
current from the REST API (topology, folder status, completion, connections)
and the event long-poll.

Threading Model:
- Uses asyncio for asynchronous operations
- All callbacks are executed in the event loop thread
- Callbacks can be both sync and async functions
- Two HTTP queues share one session, so the periodic REST calls and the event
  long-poll can be in flight at the same time
'''

import json
import logging
import re
import functools
from datetime import datetime, timezone
from typing import Optional, Callable, Any, Dict, List, Set
from enum import Enum
from dataclasses import dataclass
from urllib.parse import quote

import aiohttp

from AsyncHTTP import AsyncHTTP, HttpRequest, create_session
from syncthing_config import Config
from syncthing_items import State, ItemCollection, Folder, FolderCompletionProxy, Device, HostDevice
from syncthing_utils import Timer, Signal


logger = logging.getLogger(__name__)

# Delays and intervals (in milliseconds)
POLL_INTERVAL_MS = 20000
HTTP_RETRY_MS = 1000
EVENTS_REARM_MS = 50

# Poll ticks between connection table refreshes (every 2 minutes)
POLL_CONNECTION_HOOK = 6
# Poll ticks between topology refreshes (every 15 minutes)
POLL_CONFIG_HOOK = 45

# Consecutive non-timeout failures before giving up
HTTP_ERROR_LIMIT = 3

# Timeouts (in milliseconds)
CONNECT_TIMEOUT_MS = 5000
IO_TIMEOUT_MS = 30000
# The daemon answers an event long-poll after at most 60 seconds
EVENTS_IO_TIMEOUT_MS = 70000

EVENTS_OPERATION = 'events'


class ErrorKind(Enum):
    '''Error taxonomy, values are human readable descriptions'''
    LOGIN = 'Login attempt failed'
    DAEMON = 'Service failed to start'
    SERVICE = 'Service reported error'
    STREAM = 'Stream parsing error'
    CONNECTION = 'Connection status error'
    CONFIG = 'Config not found'


class ServiceState(Enum):
    '''Service states published through service_changed'''
    USER_ACTIVE = 'userActive'
    USER_STOPPED = 'userStopped'
    USER_ENABLED = 'userEnabled'
    USER_DISABLED = 'userDisabled'
    SYSTEM_ACTIVE = 'systemActive'
    SYSTEM_STOPPED = 'systemStopped'
    SYSTEM_ENABLED = 'systemEnabled'
    SYSTEM_DISABLED = 'systemDisabled'
    CONNECTED = 'connected'
    DISCONNECTED = 'disconnected'
    ERROR = 'error'               # Terminal, attach() is required to recover


ACTIVE_STATES = (ServiceState.USER_ACTIVE, ServiceState.SYSTEM_ACTIVE)
STOPPED_STATES = (ServiceState.USER_STOPPED, ServiceState.SYSTEM_STOPPED)


class EventType(Enum):
    '''Event API types consumed by the model'''
    CONFIG_SAVED = 'ConfigSaved'
    DEVICE_CONNECTED = 'DeviceConnected'
    DEVICE_DISCONNECTED = 'DeviceDisconnected'
    DEVICE_PAUSED = 'DevicePaused'
    DEVICE_RESUMED = 'DeviceResumed'
    FOLDER_COMPLETION = 'FolderCompletion'
    FOLDER_ERRORS = 'FolderErrors'
    FOLDER_PAUSED = 'FolderPaused'
    FOLDER_SUMMARY = 'FolderSummary'
    LOGIN_ATTEMPT = 'LoginAttempt'
    PENDING_DEVICES_CHANGED = 'PendingDevicesChanged'
    PENDING_FOLDERS_CHANGED = 'PendingFoldersChanged'
    STARTUP_COMPLETE = 'StartupComplete'
    STATE_CHANGED = 'StateChanged'


@dataclass
class ErrorEvent:
    '''Payload of the error signal'''
    type: ErrorKind
    message: str = ''


_TIMESTAMP_RE = re.compile(r'^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$')


def parse_timestamp(value: str) -> Optional[datetime]:
    '''Parse an RFC 3339 timestamp, fractions beyond microseconds are dropped'''
    match = _TIMESTAMP_RE.match((value or '').strip())
    if not match:
        return None
    base, fraction, zone = match.groups()
    if not zone or zone == 'Z':
        zone = '+00:00'
    fraction = ((fraction or '') + '000000')[:6]
    try:
        return datetime.fromisoformat(f'{base}.{fraction}{zone}')
    except ValueError:
        return None


class SyncthingAPI:
    '''
    Model of one Syncthing daemon, fed by the REST and Event API

    THREADING MODEL:
    All callbacks, signal handlers and model updates are executed in the
    event loop thread via asyncio, no synchronization is needed.

    SIGNALS:
    - service_changed(api, ServiceState)
    - error(api, ErrorEvent)
    - folder_added(api, Folder), device_added(api, Device), host_added(api, HostDevice)
    - login(api, username)
    '''

    def __init__(self, config: Optional[Config] = None):
        '''Creates the core object without starting any network activity'''
        self.config: Config = config or Config()

        self.folders = ItemCollection()
        self.devices = ItemCollection()
        self.host: Optional[HostDevice] = None

        self.service_changed = Signal('service_changed')
        self.error = Signal('error')
        self.folder_added = Signal('folder_added')
        self.device_added = Signal('device_added')
        self.host_added = Signal('host_added')
        self.login = Signal('login')

        self.folders.item_added.connect(self._on_folder_added)
        self.devices.item_added.connect(self._on_device_added)
        self.devices.item_destroyed.connect(self._on_device_destroyed)

        # HTTP clients, created on first use (needs a running event loop)
        self._session: Optional[aiohttp.ClientSession] = None
        self._http: Optional[AsyncHTTP] = None
        self._http_events: Optional[AsyncHTTP] = None
        self._http_aborting: bool = False
        self._http_error_count: int = 0
        self._http_failed: bool = False

        # Service flags
        self._service_active: bool = False
        self._service_enabled: bool = False
        self._service_connected: bool = False
        self._service_failed: bool = False

        # Polling and event stream
        self._poll_count: int = 0
        self._last_event_id: int = 1
        self._host_id: str = ''
        self._activated: bool = False
        self._stream_started: bool = False
        self._last_error_time: datetime = datetime.now(timezone.utc)

        # Timers
        self._poll_timer = Timer(POLL_INTERVAL_MS, recurring=True)
        self._event_timer = Timer(EVENTS_REARM_MS)
        self._timers: Set[Timer] = set()

    # HTTP client methods

    def _configure_http_client(self):
        '''Creates and configures HTTP clients for REST and long-polling'''
        if self._session is None or self._session.closed:
            self._session = create_session()

        if self._http is None:
            self._http = AsyncHTTP(self._session)
        self._http.connect_timeout = CONNECT_TIMEOUT_MS
        self._http.io_timeout = IO_TIMEOUT_MS
        self._http.on_begin_processing = self._http_add_header

        if self._http_events is None:
            self._http_events = AsyncHTTP(self._session)
        self._http_events.connect_timeout = CONNECT_TIMEOUT_MS
        self._http_events.io_timeout = EVENTS_IO_TIMEOUT_MS
        self._http_events.on_begin_processing = self._http_add_header

    def _http_add_header(self, request: HttpRequest, sender: Any):
        '''Adds X-API-Key header to request'''
        request.headers.setdefault('X-API-Key', self.config.get_api_key() or '')

    @staticmethod
    def parse_json(request: HttpRequest) -> Optional[Any]:
        '''Parse JSON from HTTP request response, None on failure'''
        if request is None or not request.body:
            return None
        try:
            return json.loads(request.body)
        except (ValueError, UnicodeDecodeError):
            return None

    def open_connection(self, method: str, uri: str, callback: Optional[Callable] = None,
                        stream: bool = False) -> Optional[HttpRequest]:
        '''
        Queue a request to the daemon

        Args:
            method: HTTP method
            uri: Path and query under the daemon URI, e.g. /rest/system/status
            callback: Called with the parsed JSON body on success
            stream: Use the event long-poll queue

        Returns:
            The queued request, None if the daemon is not reachable by config or state
        '''
        if not self._service_active or self._http_failed or not self.config.exists():
            return None

        self._configure_http_client()
        self._http_aborting = False

        logger.debug('Opening connection %s:%s', method, uri)
        http = self._http_events if stream else self._http
        return http.request(
            method,
            self.config.get_uri() + uri,
            callback=functools.partial(self._handle_response, method, uri, callback, stream),
            operation_name=EVENTS_OPERATION if stream else f'{method}:{uri}',
            clear_duplicates=stream
        )

    def _handle_response(self, method: str, uri: str, callback: Optional[Callable],
                         stream: bool, request: HttpRequest):
        '''Universal callback applying the transport policy'''
        if not self._service_active or self._http_aborting or request.cancelled:
            logger.debug('Ignoring response %s:%s (%s)', method, uri, request.status)
            return

        if request.succeeded:
            self._http_error_count = 0
            self._set_connected(True)
            if callback is None or not request.body:
                return
            data = self.parse_json(request)
            if data is None:
                self.emit_error(ErrorKind.STREAM, f'{method}:{uri}')
                return
            try:
                callback(data)
            except Exception:
                logger.exception('Callback failed %s:%s', method, uri)
                self.emit_error(ErrorKind.STREAM, f'{method}:{uri}')

        elif request.timed_out:
            logger.info('%s, will retry %s:%s', request.reason, method, uri)
            self._retry_later(method, uri, callback, stream)

        else:
            self._http_error_count += 1
            self.emit_error(ErrorKind.CONNECTION, f'{request.reason} - {method}:{uri} ({request.status})')
            self._set_connected(False)
            if self._http_error_count >= HTTP_ERROR_LIMIT and not self._http_failed:
                self._http_failed = True
                self._poll_timer.cancel()
                self.service_changed.emit(self, ServiceState.ERROR)

    def _retry_later(self, method: str, uri: str, callback: Optional[Callable], stream: bool):
        retry = functools.partial(self.open_connection, method, uri, callback, stream)
        if stream:
            # The event stream has a single pending slot
            self._event_timer.run(retry, HTTP_RETRY_MS)
            return

        timer = Timer(HTTP_RETRY_MS)
        self._timers.add(timer)

        def fire():
            self._timers.discard(timer)
            retry()

        timer.run(fire)

    def _set_connected(self, connected: bool):
        if connected != self._service_connected:
            self._service_connected = connected
            self.service_changed.emit(
                self, ServiceState.CONNECTED if connected else ServiceState.DISCONNECTED
            )

    def abort_connections(self):
        '''Abort in-flight and queued requests, their responses are ignored'''
        self._http_aborting = True
        if self._http:
            self._http.cancel_all()
        if self._http_events:
            self._http_events.cancel_all()

    def emit_error(self, kind: ErrorKind, message: str = ''):
        logger.error('%s %s', kind.value, message)
        self.error.emit(self, ErrorEvent(kind, message))

    # Collection hooks

    def _on_folder_added(self, collection: ItemCollection, folder: Folder):
        self.folder_added.emit(self, folder)

    def _on_device_added(self, collection: ItemCollection, device: Device):
        if isinstance(device, HostDevice):
            self.host = device
            self.host_added.emit(self, device)
        else:
            self.device_added.emit(self, device)

    def _on_device_destroyed(self, collection: ItemCollection, device: Device):
        if device is self.host:
            self.host = None

    # REST calls

    def _call_status(self, handler: Optional[Callable] = None):
        def on_status(status):
            self._host_id = status['myID']
            if handler:
                handler(status)

        return self.open_connection('GET', '/rest/system/status', on_status)

    def _call_config(self, handler: Optional[Callable] = None):
        def on_config(config):
            self._process_config(config)
            if handler:
                handler(config)

        self.open_connection('GET', '/rest/system/config', on_config)

    def _call_connections(self):
        self.open_connection('GET', '/rest/system/connections', self._process_connections)

    def _call_errors(self):
        self.open_connection('GET', '/rest/system/error', self._process_errors)

    def _call_folder_status(self, folder: Folder):
        def on_status(data):
            if not folder.is_destroyed:
                folder.set_state(data.get('state'))

        self.open_connection('GET', '/rest/db/status?folder=' + quote(folder.id), on_status)

    def _call_completion(self, proxy: FolderCompletionProxy):
        def on_completion(data):
            if not proxy.is_destroyed:
                proxy.set_completion(data.get('completion', 0))

        self.open_connection(
            'GET',
            '/rest/db/completion?folder=' + quote(proxy.folder.id) + '&device=' + quote(proxy.device.id),
            on_completion
        )

    # Event stream

    def _call_events(self, options: str):
        self.open_connection('GET', '/rest/events?' + options, self._process_events, stream=True)

    def _ensure_event_stream(self):
        '''Re-arm the long-poll if a failure left it idle'''
        if not self._host_id or self._http_events is None:
            return
        if self._http_events.request_in_queue(EVENTS_OPERATION) or self._event_timer.active:
            return
        if not self._stream_started:
            # The cursor is unknown until the newest event has been fetched
            logger.info('Restarting event stream from the newest event')
            self._call_events('limit=1')
            return
        logger.info('Restarting event stream since %s', self._last_event_id)
        self._call_events(f'since={self._last_event_id}')

    def _process_events(self, events: List[dict]):
        if not isinstance(events, list):
            raise ValueError('Event batch is not a list')
        self._stream_started = True

        for event in events:
            try:
                logger.debug('Processing event %s %s', event.get('type'), event.get('data'))
                self._process_event(event)
            except Exception as e:
                logger.warning('Event processing failed: %s', e)
            finally:
                if isinstance(event, dict) and isinstance(event.get('id'), int):
                    self._last_event_id = event['id']

        # Reschedule this event stream
        self._event_timer.run(lambda: self._call_events(f'since={self._last_event_id}'))

    def _process_event(self, event: dict):
        try:
            event_type = EventType(event.get('type'))
        except ValueError:
            return
        data = event.get('data') or {}

        if event_type in (EventType.STARTUP_COMPLETE,
                          EventType.PENDING_FOLDERS_CHANGED,
                          EventType.PENDING_DEVICES_CHANGED):
            self._call_config()

        elif event_type == EventType.CONFIG_SAVED:
            self._process_config(data)

        elif event_type == EventType.LOGIN_ATTEMPT:
            if data.get('success'):
                self.login.emit(self, data.get('username', ''))
            else:
                self.emit_error(ErrorKind.LOGIN, data.get('username', ''))

        elif event_type == EventType.FOLDER_ERRORS:
            folder = self.folders.get(data['folder'])
            if folder:
                folder.set_state(State.ERRONEOUS)

        elif event_type == EventType.FOLDER_COMPLETION:
            device = self.devices.get(data['device'])
            if self.folders.exists(data['folder']) and device:
                proxy = device.folders.get(data['folder'])
                if proxy:
                    if device.is_online():
                        device.set_state(State.SCANNING)
                    if isinstance(proxy, FolderCompletionProxy):
                        proxy.set_completion(data['completion'])

        elif event_type == EventType.FOLDER_SUMMARY:
            folder = self.folders.get(data['folder'])
            if folder:
                folder.set_state(data['summary']['state'])

        elif event_type == EventType.FOLDER_PAUSED:
            folder = self.folders.get(data['id'])
            if folder:
                folder.set_state(State.PAUSED)

        elif event_type == EventType.STATE_CHANGED:
            folder = self.folders.get(data['folder'])
            if folder:
                folder.set_state(data['to'])

        elif event_type == EventType.DEVICE_RESUMED:
            self._set_device_state(data['device'], State.DISCONNECTED)

        elif event_type == EventType.DEVICE_PAUSED:
            self._set_device_state(data['device'], State.PAUSED)

        elif event_type == EventType.DEVICE_CONNECTED:
            self._set_device_state(data['id'], State.IDLE)

        elif event_type == EventType.DEVICE_DISCONNECTED:
            self._set_device_state(data['id'], State.DISCONNECTED)

    def _set_device_state(self, device_id: str, state: State):
        device = self.devices.get(device_id)
        if device:
            device.set_state(state)

    # Model updates

    def _process_connections(self, data: dict):
        for device_id, connection in (data.get('connections') or {}).items():
            device = self.devices.get(device_id)
            if device is None or device_id == self._host_id:
                continue
            if connection.get('connected'):
                device.set_state(State.IDLE)
            elif connection.get('paused'):
                device.set_state(State.PAUSED)
            else:
                device.set_state(State.DISCONNECTED)

    def _process_errors(self, data: dict):
        for entry in data.get('errors') or []:
            when = parse_timestamp(entry.get('when', ''))
            if when is not None and when > self._last_error_time:
                self._last_error_time = when
                self.emit_error(ErrorKind.SERVICE, entry.get('message', ''))

    def _process_config(self, config: dict):
        '''
        Reconcile folders and devices with a daemon config

        Folders and devices missing from the config are destroyed, known ones
        are renamed, new ones are created. Only devices sharing at least one
        folder are part of the model.
        '''
        used_devices: Dict[str, List[Folder]] = {}
        folder_ids: Set[str] = set()

        for data in config.get('folders') or []:
            folder_id = data['id']
            name = data.get('label') or folder_id
            folder = self.folders.get(folder_id)
            if folder is None:
                folder = Folder(folder_id, name, data.get('path', ''), self)
                self.folders.add(folder)
            else:
                folder.set_name(name)
                folder.path = data.get('path', folder.path)
            folder_ids.add(folder_id)

            if data.get('paused'):
                folder.set_state(State.PAUSED)
            else:
                self._call_folder_status(folder)

            for share in data.get('devices') or []:
                used_devices.setdefault(share['deviceID'], []).append(folder)

        for folder in self.folders:
            if folder.id not in folder_ids:
                logger.info('Removing folder %s', folder.get_name())
                self.folders.destroy(folder.id)

        device_ids: Set[str] = set()
        for data in config.get('devices') or []:
            device_id = data['deviceID']
            if device_id not in used_devices:
                continue
            device_ids.add(device_id)
            name = data.get('name') or device_id
            is_host = device_id == self._host_id

            device = self.devices.get(device_id)
            if device is not None and isinstance(device, HostDevice) != is_host:
                self.devices.destroy(device_id)
                device = None

            if device is None:
                device = HostDevice(device_id, name, self) if is_host else Device(device_id, name, self)
                self.devices.add(device)
            else:
                device.set_name(name)

            self._process_device_folders(device, used_devices[device_id])

        for device in self.devices:
            if device.id not in device_ids:
                logger.info('Removing device %s', device.get_name())
                self.devices.destroy(device.id)

        self._call_connections()

    def _process_device_folders(self, device: Device, folders: List[Folder]):
        '''Attach real folders to the host and completion proxies to the peers'''
        wanted = {folder.id: folder for folder in folders}
        is_host = isinstance(device, HostDevice)

        for item in device.folders:
            if item.id in wanted:
                continue
            if isinstance(item, FolderCompletionProxy):
                item.folder.devices.destroy(device.id)
            else:
                device.folders.remove(item.id)

        for folder in folders:
            item = device.folders.get(folder.id)
            if is_host:
                if item is None:
                    device.folders.add(folder)
                continue

            if item is None:
                item = FolderCompletionProxy(folder, device)
                folder.devices.add(item)
                device.folders.add(item)
            if folder.get_state() == State.PAUSED:
                item.set_state(State.PAUSED)
            else:
                self._call_completion(item)

    def _reset(self):
        '''Drop the model and every pending transient timer'''
        self._event_timer.cancel()
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        self.folders.destroy()
        self.devices.destroy()
        self._last_event_id = 1
        self._activated = False
        self._stream_started = False
        self._host_id = ''

    # Public API methods

    def rescan(self, folder: Optional[Folder] = None):
        '''Fire and forget scan of one folder, or of all folders'''
        if folder:
            self.open_connection('POST', '/rest/db/scan?folder=' + quote(folder.id))
        else:
            self.open_connection('POST', '/rest/db/scan')

    def resume(self, device: Optional[Device]):
        if device:
            self.open_connection('POST', '/rest/system/resume?device=' + quote(device.id))

    def pause(self, device: Optional[Device]):
        if device:
            self.open_connection('POST', '/rest/system/pause?device=' + quote(device.id))

    def get_service_uri(self) -> Optional[str]:
        if self.config.exists():
            return self.config.get_uri()
        return None

    @property
    def host_id(self) -> str:
        return self._host_id

    @property
    def is_connected(self) -> bool:
        return self._service_connected

    async def close_http(self):
        '''Shut down the HTTP queues and the shared session'''
        if self._http:
            await self._http.destroy()
            self._http = None
        if self._http_events:
            await self._http_events.destroy()
            self._http_events = None
        if self._session:
            await self._session.close()
            self._session = None
