"""
In-memory stream store for testing and development

Implements the subset of the ``redis.asyncio`` stream commands used by the
publisher and consumer (XADD, XGROUP CREATE, XREADGROUP, XACK, XPENDING,
XAUTOCLAIM, XRANGE, XLEN), with the same call signatures and RESP2-shaped
replies as a client created with ``decode_responses=True``.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import ResponseError

from ..core.clock import Clock, system_clock

logger = logging.getLogger(__name__)

EntryId = Tuple[int, int]


def _parse_id(value: str) -> EntryId:
    if value in ('-', '0'):
        return (0, 0)
    ms, _, seq = str(value).partition('-')
    try:
        return (int(ms), int(seq or 0))
    except ValueError:
        raise ResponseError("ERR Invalid stream ID specified as stream command argument")


def _format_id(entry_id: EntryId) -> str:
    return f"{entry_id[0]}-{entry_id[1]}"


@dataclass
class PendingEntry:
    """A delivered but unacknowledged entry"""
    consumer: str
    delivered_at: int
    deliveries: int = 1


@dataclass
class ConsumerGroup:
    last_delivered: EntryId
    pending: Dict[EntryId, PendingEntry] = field(default_factory=dict)


@dataclass
class Stream:
    entries: "OrderedDict[EntryId, Dict[str, str]]" = field(default_factory=OrderedDict)
    last_id: EntryId = (0, 0)
    groups: Dict[str, ConsumerGroup] = field(default_factory=dict)


class InMemoryStreamStore:
    """Redis-Streams-compatible store living in the current process"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        self.streams: Dict[str, Stream] = {}
        self._changed = asyncio.Condition()
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.streams.pop(name, None) is not None:
                removed += 1
        return removed

    async def xadd(
        self,
        name: str,
        fields: Dict[Any, Any],
        id: str = '*',
        maxlen: Optional[int] = None,
        approximate: bool = True,
    ) -> str:
        if not fields:
            raise ResponseError("ERR wrong number of arguments for 'xadd' command")

        stream = self.streams.setdefault(name, Stream())
        if id == '*':
            now = self.clock.now_ms()
            if now > stream.last_id[0]:
                entry_id = (now, 0)
            else:
                entry_id = (stream.last_id[0], stream.last_id[1] + 1)
        else:
            entry_id = _parse_id(id)
            if entry_id <= stream.last_id:
                raise ResponseError(
                    "ERR The ID specified in XADD is equal or smaller than the target stream top item"
                )

        stream.entries[entry_id] = {str(k): str(v) for k, v in fields.items()}
        stream.last_id = entry_id

        # Trimming is always exact here
        if maxlen is not None:
            while len(stream.entries) > maxlen:
                stream.entries.popitem(last=False)

        async with self._changed:
            self._changed.notify_all()
        return _format_id(entry_id)

    async def xlen(self, name: str) -> int:
        stream = self.streams.get(name)
        return len(stream.entries) if stream else 0

    async def xrange(self, name: str, min: str = '-', max: str = '+', count: Optional[int] = None) -> List[Tuple[str, Dict[str, str]]]:
        stream = self.streams.get(name)
        if stream is None:
            return []
        low = _parse_id(min)
        high = None if max == '+' else _parse_id(max)
        result = []
        for entry_id, fields in stream.entries.items():
            if entry_id < low or (high is not None and entry_id > high):
                continue
            result.append((_format_id(entry_id), dict(fields)))
            if count is not None and len(result) >= count:
                break
        return result

    async def xgroup_create(self, name: str, groupname: str, id: str = '$', mkstream: bool = False) -> bool:
        stream = self.streams.get(name)
        if stream is None:
            if not mkstream:
                raise ResponseError(
                    "ERR The XGROUP subcommand requires the key to exist. "
                    "Note that for CREATE you may want to use the MKSTREAM option to create an empty stream automatically."
                )
            stream = self.streams[name] = Stream()

        if groupname in stream.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")

        start = stream.last_id if id == '$' else _parse_id(id)
        stream.groups[groupname] = ConsumerGroup(last_delivered=start)
        logger.debug(f"Group {groupname} created on {name} at {_format_id(start)}")
        return True

    async def xreadgroup(
        self,
        groupname: str,
        consumername: str,
        streams: Dict[str, str],
        count: Optional[int] = None,
        block: Optional[int] = None,
        noack: bool = False,
    ) -> List[List[Any]]:
        loop = asyncio.get_running_loop()
        deadline = None if not block else loop.time() + block / 1000

        while True:
            response = []
            for name, read_id in streams.items():
                entries = self._read_group(name, groupname, consumername, read_id, count, noack)
                if entries:
                    response.append([name, entries])

            waits_for_new = any(read_id == '>' for read_id in streams.values())
            if response or block is None or not waits_for_new:
                return response

            timeout = None if deadline is None else deadline - loop.time()
            if timeout is not None and timeout <= 0:
                return response

            async with self._changed:
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout)
                except asyncio.TimeoutError:
                    return []

    async def xack(self, name: str, groupname: str, *ids: str) -> int:
        group = self._group(name, groupname, command='XACK', missing_ok=True)
        if group is None:
            return 0
        acknowledged = 0
        for entry_id in ids:
            if group.pending.pop(_parse_id(entry_id), None) is not None:
                acknowledged += 1
        return acknowledged

    async def xpending(self, name: str, groupname: str) -> Dict[str, Any]:
        group = self._group(name, groupname, command='XPENDING')
        if not group.pending:
            return {'pending': 0, 'min': None, 'max': None, 'consumers': []}

        ids = sorted(group.pending)
        per_consumer: Dict[str, int] = {}
        for entry in group.pending.values():
            per_consumer[entry.consumer] = per_consumer.get(entry.consumer, 0) + 1
        return {
            'pending': len(ids),
            'min': _format_id(ids[0]),
            'max': _format_id(ids[-1]),
            'consumers': [{'name': n, 'pending': c} for n, c in per_consumer.items()],
        }

    async def xautoclaim(
        self,
        name: str,
        groupname: str,
        consumername: str,
        min_idle_time: int,
        start_id: str = '0-0',
        count: Optional[int] = None,
        justid: bool = False,
    ) -> List[Any]:
        stream = self.streams.get(name)
        group = self._group(name, groupname, command='XAUTOCLAIM')
        limit = count or 100
        now = self.clock.now_ms()
        start = _parse_id(start_id)

        claimed = []
        deleted = []
        next_start = (0, 0)
        for entry_id in sorted(group.pending):
            if entry_id < start:
                continue
            if len(claimed) + len(deleted) >= limit:
                next_start = entry_id
                break

            pending = group.pending[entry_id]
            if now - pending.delivered_at < min_idle_time:
                continue

            fields = stream.entries.get(entry_id)
            if fields is None:
                del group.pending[entry_id]
                deleted.append(_format_id(entry_id))
                continue

            pending.consumer = consumername
            pending.delivered_at = now
            if not justid:
                pending.deliveries += 1
            claimed.append(_format_id(entry_id) if justid else (_format_id(entry_id), dict(fields)))

        return [_format_id(next_start), claimed, deleted]

    def _group(self, name: str, groupname: str, command: str, missing_ok: bool = False) -> Optional[ConsumerGroup]:
        stream = self.streams.get(name)
        group = stream.groups.get(groupname) if stream else None
        if group is None and not missing_ok:
            raise ResponseError(
                f"NOGROUP No such key '{name}' or consumer group '{groupname}' in {command} with GROUP option"
            )
        return group

    def _read_group(
        self,
        name: str,
        groupname: str,
        consumername: str,
        read_id: str,
        count: Optional[int],
        noack: bool,
    ) -> List[Tuple[str, Optional[Dict[str, str]]]]:
        stream = self.streams.get(name)
        group = self._group(name, groupname, command='XREADGROUP')
        now = self.clock.now_ms()
        entries = []

        if read_id == '>':
            for entry_id, fields in stream.entries.items():
                if entry_id <= group.last_delivered:
                    continue
                if count is not None and len(entries) >= count:
                    break
                group.last_delivered = entry_id
                if not noack:
                    group.pending[entry_id] = PendingEntry(consumer=consumername, delivered_at=now)
                entries.append((_format_id(entry_id), dict(fields)))
            return entries

        # History read: this consumer's pending entries after read_id
        after = _parse_id(read_id)
        for entry_id in sorted(group.pending):
            pending = group.pending[entry_id]
            if entry_id <= after or pending.consumer != consumername:
                continue
            if count is not None and len(entries) >= count:
                break
            pending.delivered_at = now
            pending.deliveries += 1
            fields = stream.entries.get(entry_id)
            entries.append((_format_id(entry_id), dict(fields) if fields is not None else None))
        return entries
