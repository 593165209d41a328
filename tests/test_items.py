"""Tests for the item model: debounced states, collections and aggregation."""

import pytest

from syncthing_items import (
    Device,
    Folder,
    FolderCompletionProxy,
    HostDevice,
    Item,
    ItemCollection,
    State,
)


def record(signal):
    """Collect the arguments of every emission of signal."""
    calls = []
    signal.connect(lambda *args: calls.append(args))
    return calls


# ---------------------------------------------------------------------------
# State mapping
# ---------------------------------------------------------------------------


class TestStateFromDaemon:

    def test_exact_values(self):
        assert State.from_daemon("idle") is State.IDLE
        assert State.from_daemon("syncing") is State.SYNCING
        assert State.from_daemon("scanning") is State.SCANNING

    def test_daemon_only_values(self):
        assert State.from_daemon("error") is State.ERRONEOUS
        assert State.from_daemon("scan-waiting") is State.SCANNING
        assert State.from_daemon("clean-waiting") is State.SCANNING
        assert State.from_daemon("sync-waiting") is State.SYNCING
        assert State.from_daemon("sync-preparing") is State.SYNCING

    def test_empty_and_unknown(self):
        assert State.from_daemon("") is None
        assert State.from_daemon(None) is None
        assert State.from_daemon("something-new") is State.UNKNOWN

    def test_state_passthrough(self):
        assert State.from_daemon(State.PAUSED) is State.PAUSED


# ---------------------------------------------------------------------------
# Item state machine
# ---------------------------------------------------------------------------


class TestItem:
    """Tests for the debounced state and the name."""

    @pytest.mark.asyncio
    async def test_same_state_twice_emits_once(self, settle):
        """Setting an identical state again emits nothing new."""
        item = Item("f1", "Docs")
        changes = record(item.state_changed)
        item.set_state(State.IDLE)
        item.set_state(State.IDLE)
        await settle()
        item.set_state(State.IDLE)
        await settle()
        assert changes == [(item, State.IDLE)]

    @pytest.mark.asyncio
    async def test_burst_collapses_to_last(self, settle):
        """Rapid changes inside the debounce window emit only the last state."""
        item = Item("f1", "Docs")
        changes = record(item.state_changed)
        item.set_state(State.SCANNING)
        item.set_state(State.SYNCING)
        item.set_state(State.IDLE)
        await settle()
        assert changes == [(item, State.IDLE)]

    @pytest.mark.asyncio
    async def test_state_is_current_before_emission(self):
        """get_state() reflects the new state right away."""
        item = Item("f1", "Docs")
        changes = record(item.state_changed)
        item.set_state("sync-preparing")
        assert item.get_state() is State.SYNCING
        assert item.is_busy()
        assert changes == []

    @pytest.mark.asyncio
    async def test_back_to_emitted_state_is_silent(self, settle):
        """A burst ending on the last emitted state emits nothing."""
        item = Item("f1", "Docs")
        changes = record(item.state_changed)
        item.set_state(State.IDLE)
        await settle()
        item.set_state(State.SYNCING)
        item.set_state(State.IDLE)
        await settle()
        assert changes == [(item, State.IDLE)]

    @pytest.mark.asyncio
    async def test_empty_state_is_ignored(self, settle):
        item = Item("f1", "Docs")
        item.set_state(State.IDLE)
        item.set_state("")
        await settle()
        assert item.get_state() is State.IDLE

    def test_set_name_emits_on_change_only(self):
        item = Item("f1", "Docs")
        changes = record(item.name_changed)
        item.set_name("Docs")
        item.set_name("")
        item.set_name("Documents")
        assert changes == [(item, "Documents")]
        assert item.get_name() == "Documents"

    @pytest.mark.asyncio
    async def test_destroy_cancels_pending_emission(self, settle):
        """A destroyed item emits destroyed once and no pending state."""
        item = Item("f1", "Docs")
        changes = record(item.state_changed)
        destroyed = record(item.destroyed)
        item.set_state(State.SYNCING)
        item.destroy()
        item.destroy()
        await settle()
        assert changes == []
        assert destroyed == [(item,)]
        assert item.is_destroyed

    @pytest.mark.asyncio
    async def test_destroyed_item_ignores_updates(self):
        item = Item("f1", "Docs")
        item.destroy()
        item.set_state(State.SYNCING)
        item.set_name("Other")
        assert item.get_state() is State.UNKNOWN
        assert item.get_name() == "Docs"


# ---------------------------------------------------------------------------
# ItemCollection
# ---------------------------------------------------------------------------


class TestItemCollection:
    """Tests for the keyed registry."""

    def test_add_and_lookup(self):
        collection = ItemCollection()
        added = record(collection.item_added)
        item = Item("f1", "Docs")
        collection.add(item)
        collection.add(item)
        assert collection.exists("f1")
        assert collection.get("f1") is item
        assert "f1" in collection
        assert len(collection) == 1
        assert list(collection) == [item]
        assert added == [(collection, item)]

    def test_destroy_removes_and_notifies_once(self):
        """Destroying an item removes it with one item_destroyed notification."""
        collection = ItemCollection()
        destroyed = record(collection.item_destroyed)
        item = Item("f1", "Docs")
        collection.add(item)
        collection.destroy("f1")
        collection.destroy("f1")
        assert not collection.exists("f1")
        assert destroyed == [(collection, item)]
        assert item.is_destroyed

    def test_item_destroyed_elsewhere_is_removed(self):
        collection = ItemCollection()
        destroyed = record(collection.item_destroyed)
        item = Item("f1", "Docs")
        collection.add(item)
        item.destroy()
        assert not collection.exists("f1")
        assert destroyed == [(collection, item)]

    def test_destroy_all(self):
        collection = ItemCollection()
        items = [Item("f1", "A"), Item("f2", "B")]
        for item in items:
            collection.add(item)
        collection.destroy()
        assert len(collection) == 0
        assert all(item.is_destroyed for item in items)

    def test_remove_does_not_destroy(self):
        collection = ItemCollection()
        removed = record(collection.item_removed)
        item = Item("f1", "Docs")
        collection.add(item)
        assert collection.remove("f1") is item
        assert collection.remove("f1") is None
        assert not item.is_destroyed
        assert removed == [(collection, item)]
        # No longer watched
        item.destroy()
        assert removed == [(collection, item)]

    def test_non_owning_collection_keeps_items_alive(self):
        collection = ItemCollection(owner=False)
        item = Item("f1", "Docs")
        collection.add(item)
        collection.destroy()
        assert len(collection) == 0
        assert not item.is_destroyed

    def test_replacing_an_id_destroys_the_old_item(self):
        collection = ItemCollection()
        old, new = Item("f1", "Old"), Item("f1", "New")
        collection.add(old)
        collection.add(new)
        assert old.is_destroyed
        assert collection.get("f1") is new


# ---------------------------------------------------------------------------
# Folder / FolderCompletionProxy
# ---------------------------------------------------------------------------


class TestFolder:

    def test_rescan_delegates_to_manager(self, fake_manager):
        folder = Folder("f1", "Docs", "/data/docs", fake_manager)
        folder.rescan()
        fake_manager.rescan.assert_called_once_with(folder)

    @pytest.mark.asyncio
    async def test_completion_proxy_states(self, fake_manager):
        """Completion below 100 is syncing, 100 is idle."""
        folder = Folder("f1", "Docs", "/data/docs", fake_manager)
        device = Device("D1", "laptop", fake_manager)
        proxy = FolderCompletionProxy(folder, device)
        proxy.set_completion(99)
        assert proxy.get_state() is State.SYNCING
        proxy.set_completion(100)
        assert proxy.get_state() is State.IDLE

    @pytest.mark.asyncio
    async def test_completion_proxy_name_follows(self, fake_manager):
        folder = Folder("f1", "Docs", "/data/docs", fake_manager)
        device = Device("D1", "laptop", fake_manager)
        proxy = FolderCompletionProxy(folder, device)
        assert proxy.id == "f1"
        assert proxy.get_name() == "Docs (laptop)"
        folder.set_name("Documents")
        device.set_name("notebook")
        assert proxy.get_name() == "Documents (notebook)"

    @pytest.mark.asyncio
    async def test_folder_destroy_cascades_to_proxies(self, fake_manager):
        """A destroyed folder destroys its proxies, which leave their device."""
        folder = Folder("f1", "Docs", "/data/docs", fake_manager)
        device = Device("D1", "laptop", fake_manager)
        proxy = FolderCompletionProxy(folder, device)
        folder.devices.add(proxy)
        device.folders.add(proxy)
        assert folder.devices.get("D1") is proxy
        folder.destroy()
        assert proxy.is_destroyed
        assert not device.folders.exists("f1")
        assert not device.is_destroyed

    @pytest.mark.asyncio
    async def test_proxy_dies_with_its_device(self, fake_manager):
        folder = Folder("f1", "Docs", "/data/docs", fake_manager)
        device = Device("D1", "laptop", fake_manager)
        proxy = FolderCompletionProxy(folder, device)
        folder.devices.add(proxy)
        device.folders.add(proxy)
        device.destroy()
        assert proxy.is_destroyed
        assert len(folder.devices) == 0
        assert not folder.is_destroyed


# ---------------------------------------------------------------------------
# Device / HostDevice aggregation
# ---------------------------------------------------------------------------


def folder_with_state(folder_id, state, manager=None):
    folder = Folder(folder_id, folder_id, "", manager)
    folder.set_state(state)
    return folder


class TestDevice:
    """Tests for folder state aggregation."""

    @pytest.mark.asyncio
    async def test_first_busy_folder_wins(self, fake_manager):
        """[idle, syncing] aggregates to syncing."""
        device = Device("D1", "laptop", fake_manager)
        device.folders.add(folder_with_state("f1", State.IDLE))
        device.folders.add(folder_with_state("f2", State.SYNCING))
        device.determine_state()
        assert device.get_state() is State.SYNCING

    @pytest.mark.asyncio
    async def test_busy_state_sticks(self, fake_manager):
        """[scanning, syncing] keeps the first busy state."""
        device = Device("D1", "laptop", fake_manager)
        device.folders.add(folder_with_state("f1", State.SCANNING))
        device.folders.add(folder_with_state("f2", State.SYNCING))
        device.determine_state()
        assert device.get_state() is State.SCANNING

    @pytest.mark.asyncio
    async def test_no_folders_is_paused(self, fake_manager):
        device = Device("D1", "laptop", fake_manager)
        device.determine_state()
        assert device.get_state() is State.PAUSED

    @pytest.mark.asyncio
    async def test_offline_device_is_skipped(self, fake_manager):
        device = Device("D1", "laptop", fake_manager)
        device.set_state(State.DISCONNECTED)
        device.folders.add(folder_with_state("f1", State.SYNCING))
        device.determine_state()
        assert device.get_state() is State.DISCONNECTED
        assert not device.is_online()

    @pytest.mark.asyncio
    async def test_folder_change_triggers_delayed_aggregation(self, fake_manager, settle):
        device = Device("D1", "laptop", fake_manager)
        device.set_state(State.IDLE)
        folder = folder_with_state("f1", State.IDLE)
        device.folders.add(folder)
        folder.set_state(State.SYNCING)
        await settle(0.15)
        assert device.get_state() is State.SYNCING

    @pytest.mark.asyncio
    async def test_removed_folder_is_not_watched(self, fake_manager, settle):
        device = Device("D1", "laptop", fake_manager)
        device.set_state(State.IDLE)
        folder = folder_with_state("f1", State.IDLE)
        device.folders.add(folder)
        device.folders.remove("f1")
        folder.set_state(State.SYNCING)
        await settle(0.15)
        assert device.get_state() is State.IDLE

    def test_pause_resume_delegate(self, fake_manager):
        device = Device("D1", "laptop", fake_manager)
        device.pause()
        device.resume()
        fake_manager.pause.assert_called_once_with(device)
        fake_manager.resume.assert_called_once_with(device)


class TestHostDevice:
    """Tests for the host aggregation over peers and folders."""

    @pytest.mark.asyncio
    async def test_adopts_busy_peer_before_folders(self, fake_manager):
        peer = Device("D1", "laptop", fake_manager)
        peer.set_state(State.SCANNING)
        fake_manager.devices.add(peer)
        host = HostDevice("H", "desktop", fake_manager)
        host.folders.add(folder_with_state("f1", State.SYNCING))
        host.determine_state()
        assert host.get_state() is State.SCANNING

    @pytest.mark.asyncio
    async def test_online_peer_then_folders(self, fake_manager):
        peer = Device("D1", "laptop", fake_manager)
        peer.set_state(State.IDLE)
        fake_manager.devices.add(peer)
        host = HostDevice("H", "desktop", fake_manager)
        host.folders.add(folder_with_state("f1", State.SYNCING))
        host.determine_state()
        assert host.get_state() is State.SYNCING

    @pytest.mark.asyncio
    async def test_offline_peers_are_ignored(self, fake_manager):
        peer = Device("D1", "laptop", fake_manager)
        peer.set_state(State.DISCONNECTED)
        fake_manager.devices.add(peer)
        host = HostDevice("H", "desktop", fake_manager)
        assert host.get_state() is State.PAUSED

    @pytest.mark.asyncio
    async def test_watches_peers_added_later(self, fake_manager, settle):
        host = HostDevice("H", "desktop", fake_manager)
        fake_manager.devices.add(host)
        peer = Device("D1", "laptop", fake_manager)
        fake_manager.devices.add(peer)
        peer.set_state(State.SYNCING)
        await settle(0.15)
        assert host.get_state() is State.SYNCING

    @pytest.mark.asyncio
    async def test_destroy_stops_watching(self, fake_manager, settle):
        host = HostDevice("H", "desktop", fake_manager)
        peer = Device("D1", "laptop", fake_manager)
        fake_manager.devices.add(peer)
        host.destroy()
        assert len(fake_manager.device_added) == 0
        peer.set_state(State.SYNCING)
        await settle(0.15)
        assert host.get_state() is State.PAUSED
