'''
Observable model of Syncthing folders and devices

Items carry a debounced state: set_state() records the new state at once and
state_changed is emitted 200ms later, only if the state still differs from the
last emitted one. Devices derive their state from the folders they share
(and, for the host, from the other devices).
'''

import logging
from enum import Enum
from typing import Optional, Callable, Dict, Iterator, Any

from syncthing_utils import Timer, Signal


logger = logging.getLogger(__name__)

STATE_DEBOUNCE_MS = 200
DEVICE_STATE_DEBOUNCE_MS = 600


class State(Enum):
    '''Item states, values match the daemon folder states where they overlap'''
    UNKNOWN = 'unknown'
    IDLE = 'idle'
    SCANNING = 'scanning'
    SYNCING = 'syncing'
    PAUSED = 'paused'
    ERRONEOUS = 'erroneous'
    DISCONNECTED = 'disconnected'

    @classmethod
    def from_daemon(cls, value: Any) -> Optional['State']:
        '''Map a daemon state string onto State, None for an empty value'''
        if isinstance(value, State):
            return value
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return DAEMON_STATES.get(value, cls.UNKNOWN)


# Daemon folder states without a State of the same name
DAEMON_STATES: Dict[str, State] = {
    'error': State.ERRONEOUS,
    'scan-waiting': State.SCANNING,
    'cleaning': State.SCANNING,
    'clean-waiting': State.SCANNING,
    'sync-waiting': State.SYNCING,
    'sync-preparing': State.SYNCING,
}


class Item:
    '''Folder or device with identity, display name and debounced state'''

    def __init__(self, item_id: str, name: str, manager: Any = None):
        self.id: str = item_id
        self.manager = manager
        self._name: str = name
        self._state: State = State.UNKNOWN
        self._last_emitted_state: State = State.UNKNOWN
        self._state_timer = Timer(STATE_DEBOUNCE_MS)
        self._destroyed: bool = False

        self.state_changed = Signal('state_changed')  # (item, state)
        self.name_changed = Signal('name_changed')    # (item, name)
        self.destroyed = Signal('destroyed')          # (item)

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.id} {self._name!r} {self._state.value}>'

    def is_busy(self) -> bool:
        return self._state in (State.SYNCING, State.SCANNING)

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def get_state(self) -> State:
        return self._state

    def set_state(self, state: Any):
        state = State.from_daemon(state)
        if state is None or state == self._state or self._destroyed:
            return
        self._state_timer.cancel()
        logger.debug('State change %s: %s -> %s', self._name, self._state.value, state.value)
        self._state = state
        self._state_timer.run(self._emit_state)

    def _emit_state(self):
        if self._destroyed or self._state == self._last_emitted_state:
            return
        self._last_emitted_state = self._state
        logger.info('Emit state change %s: %s', self._name, self._state.value)
        self.state_changed.emit(self, self._state)

    def get_name(self) -> str:
        return self._name

    def set_name(self, name: str):
        if not name or name == self._name or self._destroyed:
            return
        logger.info('Emit name change %s: %s', self._name, name)
        self._name = name
        self.name_changed.emit(self, name)

    def destroy(self):
        '''Cancel the pending state emission and notify dependents, runs once'''
        if self._destroyed:
            return
        self._destroyed = True
        self._state_timer.cancel()
        self.destroyed.emit(self)
        self.state_changed.clear()
        self.name_changed.clear()
        self.destroyed.clear()


class ItemCollection:
    '''
    Keyed registry of items

    An item destroyed anywhere is removed automatically. An owning collection
    destroys its items on destroy(), a non-owning one only forgets them.
    '''

    def __init__(self, owner: bool = True, key: Optional[Callable[[Item], str]] = None):
        self._owner: bool = owner
        self._key: Callable[[Item], str] = key or (lambda item: item.id)
        self._collection: Dict[str, Item] = {}

        self.item_added = Signal('item_added')          # (collection, item)
        self.item_removed = Signal('item_removed')      # (collection, item)
        self.item_destroyed = Signal('item_destroyed')  # (collection, item)

    @property
    def owner(self) -> bool:
        return self._owner

    def add(self, item: Item):
        key = self._key(item)
        existing = self._collection.get(key)
        if existing is item:
            return
        if existing is not None:
            self.destroy(key)
        self._collection[key] = item
        item.destroyed.connect(self._on_item_destroyed)
        self.item_added.emit(self, item)

    def get(self, item_id: str) -> Optional[Item]:
        return self._collection.get(item_id)

    def exists(self, item_id: str) -> bool:
        return item_id in self._collection

    def remove(self, item_id: str) -> Optional[Item]:
        '''Forget an item without destroying it'''
        item = self._collection.pop(item_id, None)
        if item is not None:
            item.destroyed.disconnect(self._on_item_destroyed)
            self.item_removed.emit(self, item)
        return item

    def destroy(self, item_id: Optional[str] = None):
        '''Destroy one item, or every item when no id is given'''
        if item_id is None:
            for key in list(self._collection):
                self.destroy(key)
            return
        item = self._collection.get(item_id)
        if item is None:
            return
        if self._owner:
            # Removal and item_destroyed follow from the destroyed signal
            item.destroy()
        else:
            self.remove(item_id)

    def clear(self):
        '''Forget every item without destroying any'''
        for key in list(self._collection):
            self.remove(key)

    def _on_item_destroyed(self, item: Item):
        key = self._key(item)
        if self._collection.get(key) is not item:
            return
        del self._collection[key]
        self.item_destroyed.emit(self, item)

    def ids(self):
        return list(self._collection)

    def __iter__(self) -> Iterator[Item]:
        return iter(list(self._collection.values()))

    def __len__(self) -> int:
        return len(self._collection)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._collection


class Folder(Item):
    '''Synchronized directory, owns the completion proxies of its devices'''

    def __init__(self, item_id: str, name: str, path: str = '', manager: Any = None):
        super().__init__(item_id, name, manager)
        self.path: str = path
        self.devices = ItemCollection(owner=True, key=lambda proxy: proxy.device.id)

    def rescan(self):
        if self.manager is not None:
            self.manager.rescan(self)

    def destroy(self):
        if self._destroyed:
            return
        self.devices.destroy()
        super().destroy()


class FolderCompletionProxy(Folder):
    '''Per device view of a folder, state follows the completion percentage'''

    def __init__(self, folder: Folder, device: 'Device'):
        super().__init__(folder.id, self._make_name(folder, device), folder.path, folder.manager)
        self.folder = folder
        self.device = device
        self.completion: float = 0.0
        folder.name_changed.connect(self._on_name_changed)
        device.name_changed.connect(self._on_name_changed)
        device.destroyed.connect(self._on_device_destroyed)

    @staticmethod
    def _make_name(folder: Folder, device: 'Device') -> str:
        return f'{folder.get_name()} ({device.get_name()})'

    def set_completion(self, percentage: float):
        self.completion = percentage
        if percentage < 100:
            self.set_state(State.SYNCING)
        else:
            self.set_state(State.IDLE)

    def _on_name_changed(self, item: Item, name: str):
        self.set_name(self._make_name(self.folder, self.device))

    def _on_device_destroyed(self, device: 'Device'):
        self.destroy()

    def destroy(self):
        if self._destroyed:
            return
        self.folder.name_changed.disconnect(self._on_name_changed)
        self.device.name_changed.disconnect(self._on_name_changed)
        self.device.destroyed.disconnect(self._on_device_destroyed)
        super().destroy()


class Device(Item):
    '''
    Peer device

    The state is aggregated from the folders it shares: paused by default,
    then every folder state is adopted for as long as the device is not busy,
    so the first syncing or scanning folder wins. The folders collection does
    not own its items (real folders for the host, completion proxies for peers).
    '''

    def __init__(self, item_id: str, name: str, manager: Any = None):
        super().__init__(item_id, name, manager)
        self._determine_timer = Timer(DEVICE_STATE_DEBOUNCE_MS)
        self.folders = ItemCollection(owner=False)
        self.folders.item_added.connect(self._on_folder_added)
        self.folders.item_removed.connect(self._on_folder_removed)
        self.folders.item_destroyed.connect(self._on_folder_removed)

    def is_online(self) -> bool:
        return self._state not in (State.DISCONNECTED, State.PAUSED)

    def _on_folder_added(self, collection: ItemCollection, folder: Item):
        folder.state_changed.connect(self._on_child_state_changed)

    def _on_folder_removed(self, collection: ItemCollection, folder: Item):
        folder.state_changed.disconnect(self._on_child_state_changed)

    def _on_child_state_changed(self, item: Item, state: State):
        self.determine_state_delayed()

    def determine_state_delayed(self):
        if not self._destroyed:
            self._determine_timer.run(self.determine_state)

    def determine_state(self):
        if self._destroyed or not self.is_online():
            return
        self.set_state(State.PAUSED)
        for folder in self.folders:
            if not self.is_busy():
                logger.debug('Determine device state %s: %s %s',
                             self._name, folder.get_name(), folder.get_state().value)
                self.set_state(folder.get_state())

    def pause(self):
        if self.manager is not None:
            self.manager.pause(self)

    def resume(self):
        if self.manager is not None:
            self.manager.resume(self)

    def destroy(self):
        if self._destroyed:
            return
        self._determine_timer.cancel()
        self.folders.clear()
        super().destroy()


class HostDevice(Device):
    '''Local device, also aggregates the states of the online peer devices'''

    def __init__(self, item_id: str, name: str, manager: Any):
        super().__init__(item_id, name, manager)
        manager.device_added.connect(self._on_device_added)
        for device in manager.devices:
            self._watch(device)
        self.determine_state()

    def _on_device_added(self, manager: Any, device: Device):
        self._watch(device)

    def _watch(self, device: Item):
        if device is not self:
            device.state_changed.connect(self._on_child_state_changed)

    def determine_state(self):
        if self._destroyed:
            return
        self.set_state(State.PAUSED)
        for device in self.manager.devices:
            if device is not self and not self.is_busy() and device.is_online():
                logger.debug('Determine host device state %s: %s %s',
                             self._name, device.get_name(), device.get_state().value)
                self.set_state(device.get_state())
        if not self.is_busy():
            super().determine_state()

    def destroy(self):
        if self._destroyed:
            return
        self.manager.device_added.disconnect(self._on_device_added)
        for device in self.manager.devices:
            device.state_changed.disconnect(self._on_child_state_changed)
        super().destroy()
