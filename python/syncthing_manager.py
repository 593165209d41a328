'''
syncthing_manager - Service management for Syncthing with API integration

Extends SyncthingAPI with the systemd side: the daemon runs as
syncthing.service, in the user manager if it is known there, else in the
system manager. The manager polls the unit state every 20 seconds and
(de)activates the model on the edges.

Threading Model:
- Uses asyncio for systemctl calls and polling
- All callbacks are executed in the event loop thread
'''

import asyncio
import logging
from typing import Optional
from dataclasses import dataclass

from syncthing_api import (
    SyncthingAPI, ServiceState, ErrorKind,
    ACTIVE_STATES, STOPPED_STATES, POLL_CONFIG_HOOK, POLL_CONNECTION_HOOK
)
from syncthing_config import Config, SERVICE_NAME
from syncthing_items import State
from syncthing_utils import Timer


logger = logging.getLogger(__name__)

SERVICE_UNIT = SERVICE_NAME + '.service'
SYSTEMCTL = 'systemctl'

# Re-check after start/stop, service managers report "activating" for a moment
SERVICE_CHECK_MS = 1000


@dataclass
class ServiceStatus:
    '''Result of the is-enabled check'''
    user: bool = True                # Unit found in the user manager
    enabled: bool = False            # Unit is enabled (else: disabled)


class SyncthingManager(SyncthingAPI):
    '''
    Syncthing manager with service management

    Extends SyncthingAPI with:
    - Service detection (user mode first, then system mode)
    - Periodic poll loop (topology, connections, daemon errors)
    - Start/stop/enable/disable of the systemd unit
    '''

    def __init__(self, config: Optional[Config] = None):
        '''Creates the manager object, attach() starts the activity'''
        super().__init__(config)
        self._service_timer = Timer(SERVICE_CHECK_MS)
        # Manager the unit was last found in, True for the user manager
        self._service_user: bool = True
        self.service_changed.connect(self._on_service_changed)

    def _on_service_changed(self, sender: SyncthingAPI, state: ServiceState):
        if state in ACTIVE_STATES:
            self._activate()
        elif state in STOPPED_STATES:
            self._reset()

    def _activate(self):
        '''Host id first, then the topology, then the event stream cursor'''
        request = self._call_status(
            lambda status: self._call_config(
                lambda config: self._call_events('limit=1')
            )
        )
        self._activated = request is not None

    # systemd

    async def _service_command(self, command: str, user: bool = True) -> str:
        '''Run systemctl and return its trimmed output, empty on failure'''
        args = [SYSTEMCTL, command, SERVICE_UNIT]
        if user:
            args.insert(1, '--user')
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            logger.warning('Cannot run %s: %s', ' '.join(args), e)
            return ''
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        result = stdout.decode(errors='replace').strip()
        logger.debug('Calling systemd %s -> %s', ' '.join(args), result)
        return result

    async def _service_state(self, user: bool = True) -> Optional[ServiceStatus]:
        '''Find the unit in the user manager, falling back to the system manager'''
        result = await self._service_command('is-enabled', user)
        if result in ('enabled', 'disabled'):
            return ServiceStatus(user=user, enabled=(result == 'enabled'))
        if user:
            return await self._service_state(False)
        return None

    async def _is_service_active(self) -> bool:
        status = await self._service_state()
        if status is None:
            # Unit gone from both managers: stopped, in the mode it was last seen
            result = ''
            user = self._service_user
        else:
            result = await self._service_command('is-active', status.user)
            user = self._service_user = status.user
        active = result == 'active'
        failed = result == 'failed'

        if failed != self._service_failed:
            self._service_failed = failed
            if failed:
                self.emit_error(ErrorKind.DAEMON, SERVICE_UNIT)

        if active != self._service_active:
            self._service_active = active
            if user:
                state = ServiceState.USER_ACTIVE if active else ServiceState.USER_STOPPED
            else:
                state = ServiceState.SYSTEM_ACTIVE if active else ServiceState.SYSTEM_STOPPED
            logger.info('Service %s', state.value)
            self.service_changed.emit(self, state)
            if self.host:
                self.host.set_state(State.IDLE if active else State.DISCONNECTED)

        return active

    async def _is_service_enabled(self) -> bool:
        status = await self._service_state()
        if status is None:
            status = ServiceStatus(user=self._service_user, enabled=False)
        else:
            self._service_user = status.user

        if status.enabled != self._service_enabled:
            self._service_enabled = status.enabled
            if status.user:
                state = ServiceState.USER_ENABLED if status.enabled else ServiceState.USER_DISABLED
            else:
                state = ServiceState.SYSTEM_ENABLED if status.enabled else ServiceState.SYSTEM_DISABLED
            logger.info('Service %s', state.value)
            self.service_changed.emit(self, state)

        return status.enabled

    # Polling

    async def _resolve_config(self) -> bool:
        '''exists(), asking the daemon binary for its path table first while unresolved'''
        if self.config.exists():
            return True
        await self.config.query_paths()
        return self.config.exists()

    async def _poll_state(self):
        '''One poll tick'''
        if await self._is_service_active() and await self._resolve_config():
            if self._poll_count % POLL_CONFIG_HOOK == 0:
                self._call_config()
            if self._poll_count % POLL_CONNECTION_HOOK == 0:
                await self._is_service_enabled()
                self._call_connections()
            if not self._activated:
                # Service became active while the config was not resolvable
                self._activate()
            else:
                self._ensure_event_stream()
            self._call_errors()
        else:
            await self._is_service_enabled()
        self._poll_count += 1

    # Public API methods

    async def attach(self):
        '''Start (or restart after an ERROR) polling the service and the daemon'''
        if not await self._resolve_config():
            logger.error(ErrorKind.CONFIG.value)
            self.service_changed.emit(self, ServiceState.ERROR)
            self.emit_error(ErrorKind.CONFIG)

        self._poll_timer.cancel()
        self._reset()
        self._http_failed = False
        self._http_error_count = 0
        self._service_active = False
        self._service_enabled = False
        self._service_failed = False
        self._service_connected = False
        self._poll_count = 0

        await self._poll_state()
        self._poll_timer.run(self._poll_state)

    def destroy(self):
        '''Stop polling and drop the model, attach() resumes'''
        self._poll_timer.cancel()
        self._service_timer.cancel()
        self._reset()
        self._service_active = False
        self._service_connected = False
        self.config.clear()

    async def close(self):
        '''destroy() plus shutdown of the HTTP clients'''
        self.destroy()
        await self.close_http()

    async def start_service(self):
        self.config.set_service()
        await self._service_command('start')
        self._service_failed = False
        self._service_timer.run(self._is_service_active)

    async def stop_service(self):
        self.abort_connections()
        await self._service_command('stop')
        self._service_timer.run(self._is_service_active)

    async def enable_service(self):
        self.config.set_service(force=True)
        await self._service_command('enable')
        await self._is_service_enabled()

    async def disable_service(self):
        await self._service_command('disable')
        await self._is_service_enabled()
