"""Concurrency-safe registry of bulbs backed by the persistent store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from . import codec
from .bulb import Bulb, DeviceError
from .config import Config
from .discovery import DiscoveredBulb, DiscoveryError, DiscoveryScanner
from .locks import ReadWriteLock
from .logging import get_logger
from .metrics import set_registry_size
from .models import BulbRecord, Identifier
from .store import BulbStore, DuplicateRecord, StoreError, connect

IdentifierLike = Union[Identifier, int, str]


class RegistryError(Exception):
    """Base class for errors surfaced at the registry boundary."""

    kind = "registry"


class NotFound(RegistryError):
    kind = "not_found"

    def __init__(self, identifier: Identifier) -> None:
        super().__init__(f"No bulb registered with id {identifier}")
        self.identifier = identifier


class AlreadyExists(RegistryError):
    kind = "already_exists"

    def __init__(self, identifier: Identifier) -> None:
        super().__init__(f"A bulb with id {identifier} is already registered")
        self.identifier = identifier


class StorageFailure(RegistryError):
    """The store rejected an operation; memory and store may have diverged."""

    kind = "storage_failure"


class CommandFailed(RegistryError):
    """A bulb command failed; ``kind`` tells timeouts from unreachable or confused devices."""

    def __init__(self, identifier: Identifier, cause: DeviceError) -> None:
        super().__init__(f"Command to bulb {identifier} failed: {cause}")
        self.identifier = identifier
        self.cause = cause
        self.reason = cause.reason

    @property
    def kind(self) -> str:  # type: ignore[override]
        return self.cause.kind


class DiscoveryFailed(RegistryError):
    kind = "discovery_failed"


@dataclass(frozen=True)
class CommandStatus:
    """Outcome of a power command as acknowledged by the bulb."""

    id: Identifier
    action: str
    power: bool
    success: bool
    result: Mapping[str, Any]

    def describe(self) -> str:
        verdict = "success" if self.success else "not acknowledged"
        return f"Turn {self.action} status for id {self.id}: {verdict}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.to_json(),
            "action": self.action,
            "power": self.power,
            "success": self.success,
            "status": self.describe(),
            "result": dict(self.result),
        }


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of re-querying one bulb."""

    id: Identifier
    status: str
    power: Optional[bool] = None


class Registry:
    """Authoritative set of known bulbs.

    A reader/writer lock guards the id map and the name and MAC indexes. It is
    never held while waiting on a bulb or on the store; exchanges with the same
    bulb are ordered by that bulb's ``command_lock`` instead.
    """

    def __init__(
        self,
        store: BulbStore,
        config: Optional[Config] = None,
        scanner: Optional[DiscoveryScanner] = None,
    ) -> None:
        self.config = config or Config()
        self.store = store
        self.scanner = scanner or DiscoveryScanner(
            self.config.bulb_port,
            broadcast=self.config.discovery_broadcast,
            max_hosts=self.config.discovery_max_hosts,
        )
        self.logger = get_logger("wiz.registry")
        self._lock = ReadWriteLock()
        self._bulbs: Dict[Identifier, Bulb] = {}
        self._by_name: Dict[str, List[Identifier]] = {}
        self._by_mac: Dict[str, Identifier] = {}
        self._reserved: Set[Identifier] = set()

    @classmethod
    async def from_url(
        cls,
        url: str,
        config: Optional[Config] = None,
        scanner: Optional[DiscoveryScanner] = None,
    ) -> "Registry":
        """Connect to the store at ``url`` and hydrate a registry from it."""

        store = await connect(url)
        registry = cls(store, config, scanner)
        try:
            await registry.hydrate()
        except RegistryError:
            await store.close()
            raise
        return registry

    async def hydrate(self) -> int:
        try:
            records = await self.store.list()
        except StoreError as exc:
            raise StorageFailure(str(exc)) from exc
        async with self._lock.write():
            self._bulbs.clear()
            self._by_name.clear()
            self._by_mac.clear()
            for record in records:
                self._insert(self._build(record))
            count = len(self._bulbs)
        set_registry_size(count)
        self.logger.info("Registry hydrated", extra={"count": count})
        return count

    async def close(self) -> None:
        await self.store.close()

    def _build(self, record: BulbRecord) -> Bulb:
        return Bulb.from_record(
            record, port=self.config.bulb_port, timeout=self.config.command_timeout
        )

    def _insert(self, bulb: Bulb) -> None:
        self._bulbs[bulb.id] = bulb
        self._by_name.setdefault(bulb.name, []).append(bulb.id)
        if bulb.mac:
            self._by_mac[bulb.mac] = bulb.id

    def _discard(self, bulb: Bulb) -> None:
        self._bulbs.pop(bulb.id, None)
        ids = self._by_name.get(bulb.name, [])
        if bulb.id in ids:
            ids.remove(bulb.id)
        if not ids:
            self._by_name.pop(bulb.name, None)
        if bulb.mac and self._by_mac.get(bulb.mac) == bulb.id:
            del self._by_mac[bulb.mac]

    async def add(self, record: BulbRecord) -> BulbRecord:
        """Persist and register a bulb.

        Raises:
            AlreadyExists: a bulb with the same id is registered or being added.
            StorageFailure: the store did not persist the record; nothing was
                registered.
        """

        reserved = record.id
        if reserved is not None:
            async with self._lock.write():
                if reserved in self._bulbs or reserved in self._reserved:
                    raise AlreadyExists(reserved)
                self._reserved.add(reserved)
        try:
            if record.mac is None and self.config.resolve_mac_on_add:
                record = await self._with_resolved_mac(record)
            try:
                assigned = await self.store.create(record)
            except DuplicateRecord as exc:
                if record.id is None:
                    raise StorageFailure(str(exc)) from exc
                raise AlreadyExists(record.id) from exc
            except StoreError as exc:
                self.logger.error(
                    "Failed to persist bulb; registry left unchanged",
                    extra={"name": record.name, "ip": record.address, "error": str(exc)},
                )
                raise StorageFailure(str(exc)) from exc
            stored = replace(record, id=assigned)
            bulb = self._build(stored)
            async with self._lock.write():
                self._reserved.discard(assigned)
                self._insert(bulb)
                count = len(self._bulbs)
        except BaseException:
            if reserved is not None:
                async with self._lock.write():
                    self._reserved.discard(reserved)
            raise
        set_registry_size(count)
        self.logger.info(
            "Registered bulb",
            extra={"bulb_id": str(assigned), "name": stored.name, "ip": stored.address, "mac": stored.mac},
        )
        return bulb.snapshot()

    async def _with_resolved_mac(self, record: BulbRecord) -> BulbRecord:
        probe = Bulb(
            record.id or Identifier.opaque("pending"),
            record.name,
            record.address,
            port=self.config.bulb_port,
        )
        try:
            mac = await probe.resolve_mac(self.config.resolve_mac_timeout)
        except DeviceError as exc:
            self.logger.warning(
                "Could not resolve bulb MAC; registering without it",
                extra={"ip": record.address, "error": str(exc)},
            )
            return record
        return replace(record, mac=mac)

    async def remove(self, identifier: IdentifierLike) -> None:
        key = Identifier.parse(identifier)
        bulb = await self._require(key)
        try:
            await self.store.delete(key)
        except StoreError as exc:
            self.logger.error(
                "Failed to delete bulb from store; it stays registered and memory may diverge from the store",
                extra={"bulb_id": str(key), "error": str(exc)},
            )
            raise StorageFailure(str(exc)) from exc
        async with self._lock.write():
            if self._bulbs.get(key) is bulb:
                self._discard(bulb)
            count = len(self._bulbs)
        set_registry_size(count)
        self.logger.info("Removed bulb", extra={"bulb_id": str(key)})

    async def get(self, identifier: IdentifierLike) -> Optional[BulbRecord]:
        key = Identifier.parse(identifier)
        async with self._lock.read():
            bulb = self._bulbs.get(key)
            return bulb.snapshot() if bulb else None

    async def find_by_name(self, name: str) -> Optional[BulbRecord]:
        """Return the first bulb registered under ``name``, or ``None``."""

        async with self._lock.read():
            for identifier in self._by_name.get(name, ()):
                bulb = self._bulbs.get(identifier)
                if bulb is not None:
                    return bulb.snapshot()
        return None

    async def records(self) -> List[BulbRecord]:
        async with self._lock.read():
            return [bulb.snapshot() for bulb in self._bulbs.values()]

    async def ids(self) -> List[Identifier]:
        async with self._lock.read():
            return list(self._bulbs)

    async def _require(self, key: Identifier) -> Bulb:
        async with self._lock.read():
            bulb = self._bulbs.get(key)
        if bulb is None:
            raise NotFound(key)
        return bulb

    async def turn_on_by_id(self, identifier: IdentifierLike) -> CommandStatus:
        return await self._set_power(Identifier.parse(identifier), True)

    async def turn_off_by_id(self, identifier: IdentifierLike) -> CommandStatus:
        return await self._set_power(Identifier.parse(identifier), False)

    async def _set_power(self, key: Identifier, power: bool) -> CommandStatus:
        bulb = await self._require(key)
        async with bulb.command_lock:
            try:
                response = await bulb.set_power(power, self.config.command_timeout)
            except DeviceError as exc:
                self._note_failure(bulb, exc)
                raise CommandFailed(key, exc) from exc
            success = codec.command_succeeded(response)
            if success:
                async with self._lock.write():
                    bulb.apply_power(power)
        status = CommandStatus(
            id=key,
            action="on" if power else "off",
            power=power,
            success=success,
            result=response.result or {},
        )
        self.logger.info(
            "Bulb command acknowledged" if status.success else "Bulb did not confirm command",
            extra={"bulb_id": str(key), "power": power, "success": status.success},
        )
        return status

    async def toggle_by_id(self, identifier: IdentifierLike) -> CommandStatus:
        """Flip the bulb's reported power state."""

        key = Identifier.parse(identifier)
        bulb = await self._require(key)
        async with bulb.command_lock:
            try:
                current = await bulb.query_power(self.config.command_timeout)
                response = await bulb.set_power(not current, self.config.command_timeout)
            except DeviceError as exc:
                self._note_failure(bulb, exc)
                raise CommandFailed(key, exc) from exc
            success = codec.command_succeeded(response)
            async with self._lock.write():
                # the query answered even if the bulb refused the change
                bulb.apply_power(not current if success else current)
        return CommandStatus(
            id=key,
            action="off" if current else "on",
            power=not current,
            success=success,
            result=response.result or {},
        )

    async def query_state_by_id(self, identifier: IdentifierLike) -> bool:
        key = Identifier.parse(identifier)
        outcome = await self._refresh_one(
            await self._require(key), self.config.command_timeout, track_liveness=False
        )
        if outcome.error is not None:
            raise CommandFailed(key, outcome.error)
        return bool(outcome.power)

    async def _refresh_one(
        self, bulb: Bulb, timeout: float, track_liveness: bool = True
    ) -> "_Refreshed":
        async with bulb.command_lock:
            try:
                power = await bulb.query_power(timeout)
            except DeviceError as exc:
                self._note_failure(bulb, exc)
                if track_liveness:
                    async with self._lock.write():
                        bulb.mark_unreachable()
                return _Refreshed(bulb.id, exc.kind, error=exc)
            async with self._lock.write():
                bulb.apply_power(power)
        return _Refreshed(bulb.id, "ok", power=power)

    async def refresh(
        self, identifiers: Optional[Iterable[IdentifierLike]] = None, timeout: Optional[float] = None
    ) -> List[RefreshOutcome]:
        """Re-query bulbs concurrently and update their cached state."""

        async with self._lock.read():
            if identifiers is None:
                bulbs = list(self._bulbs.values())
            else:
                keys = [Identifier.parse(item) for item in identifiers]
                bulbs = [self._bulbs[key] for key in keys if key in self._bulbs]
        window = timeout if timeout is not None else self.config.command_timeout
        results = await asyncio.gather(*(self._refresh_one(bulb, window) for bulb in bulbs))
        return [RefreshOutcome(item.id, item.status, item.power) for item in results]

    def _note_failure(self, bulb: Bulb, exc: DeviceError) -> None:
        self.logger.warning(
            "Bulb exchange failed",
            extra={"bulb_id": str(bulb.id), "ip": bulb.address, "kind": exc.kind, "error": exc.reason},
        )

    async def discover_unknown_bulbs(self) -> List[DiscoveredBulb]:
        """Scan the LAN and return responders that are not registered."""

        try:
            scan = await self.scanner.scan(
                self.config.discovery_subnet, self.config.discovery_timeout
            )
        except DiscoveryError as exc:
            raise DiscoveryFailed(str(exc)) from exc
        found = await scan.collect()
        async with self._lock.read():
            unknown = [item for item in found if not self._is_known(item.reported_id)]
        unknown.sort(key=lambda item: (item.address, item.reported_id))
        self.logger.info(
            "Discovery finished",
            extra={
                "responders": len(found),
                "unknown": len(unknown),
                "send_failures": len(scan.failures),
            },
        )
        return unknown

    def _is_known(self, reported_id: str) -> bool:
        if reported_id.lower() in self._by_mac:
            return True
        try:
            return Identifier.parse(reported_id) in self._bulbs
        except ValueError:
            return False


@dataclass(frozen=True)
class _Refreshed:
    id: Identifier
    status: str
    power: Optional[bool] = None
    error: Optional[DeviceError] = None
