import json
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from redis import exceptions as redis_exceptions

from seatlock.services.lock_store import LockStore
from seatlock.services.types import (
    Actor,
    ActorKind,
    BatchOutcome,
    ReassignStatus,
    SeatLock,
    StoreStatus,
)

logger = logging.getLogger(__name__)

# {trip_id} is a hash tag: every key of one trip lands in the same cluster slot
LOCK_KEY_TPL = "seat_lock:{{{trip_id}}}:{seat_code}"
OWNER_KEY_TPL = "seat_lock_owner:{{{trip_id}}}:{owner}"
TRIP_KEY_TPL = "seat_lock_trip:{{{trip_id}}}"
TRIP_KEY_PREFIX = "seat_lock_trip:"


_PRELUDE = """
local function decode(raw)
  if not raw then return nil end
  return cjson.decode(raw)
end

local function is_live(rec, now)
  return rec ~= nil and tonumber(rec.expires_at) > now
end

local function is_owner(rec, kind, id)
  return rec.owner_kind == kind and rec.owner_id == id
end

local function owns(rec, kind, id, session)
  if not is_owner(rec, kind, id) then return false end
  if session ~= '' and rec.session_id ~= '' and rec.session_id ~= session then return false end
  return true
end

local function live_count(owner_key, lock_prefix, kind, id, now)
  local count = 0
  for _, seat in ipairs(redis.call('SMEMBERS', owner_key)) do
    local rec = decode(redis.call('GET', lock_prefix .. seat))
    if is_live(rec, now) and is_owner(rec, kind, id) then
      count = count + 1
    else
      redis.call('SREM', owner_key, seat)
    end
  end
  return count
end

local function bump(key, ms)
  if redis.call('PTTL', key) < ms then
    redis.call('PEXPIRE', key, ms)
  end
end
"""

# KEYS: owner index, trip index, lock keys...
# ARGV: kind, id, session, now, ttl, max_seats, grace, lock prefix, seat codes...
_ACQUIRE = """
local kind, id, session = ARGV[1], ARGV[2], ARGV[3]
local now, ttl = tonumber(ARGV[4]), tonumber(ARGV[5])
local max_seats, grace = tonumber(ARGV[6]), tonumber(ARGV[7])
local lock_prefix = ARGV[8]

local conflicts, held, fresh = {}, {}, {}
local held_expiry = nil
for i = 3, #KEYS do
  local seat = ARGV[i + 6]
  local rec = decode(redis.call('GET', KEYS[i]))
  if not is_live(rec, now) then
    table.insert(fresh, i)
  elseif owns(rec, kind, id, session) then
    table.insert(held, seat)
    local exp = tonumber(rec.expires_at)
    if held_expiry == nil or exp < held_expiry then held_expiry = exp end
  else
    table.insert(conflicts, seat)
  end
end

if #conflicts > 0 then
  return cjson.encode({status = 'conflict', seats = conflicts})
end

local count = live_count(KEYS[1], lock_prefix, kind, id, now)
if count + #fresh > max_seats then
  return cjson.encode({status = 'ceiling', held_count = count})
end

local expires_at = now + ttl
local granted = {}
for _, i in ipairs(fresh) do
  local seat = ARGV[i + 6]
  local rec = {owner_kind = kind, owner_id = id, session_id = session, locked_at = now, expires_at = expires_at}
  redis.call('SET', KEYS[i], cjson.encode(rec), 'PX', ttl + grace)
  redis.call('SADD', KEYS[1], seat)
  redis.call('SADD', KEYS[2], seat)
  table.insert(granted, seat)
end

if #granted > 0 then
  bump(KEYS[1], ttl + grace)
  bump(KEYS[2], ttl + grace)
else
  expires_at = held_expiry
end

return cjson.encode({
  status = 'ok', seats = granted, held = held,
  held_count = count + #granted, expires_at = expires_at
})
"""

# KEYS: owner index, trip index, lock keys...
# ARGV: kind, id, session, now, ttl, grace, seat codes...
_EXTEND = """
local kind, id, session = ARGV[1], ARGV[2], ARGV[3]
local now, ttl, grace = tonumber(ARGV[4]), tonumber(ARGV[5]), tonumber(ARGV[6])

local denied, expired, recs = {}, {}, {}
for i = 3, #KEYS do
  local seat = ARGV[i + 4]
  local rec = decode(redis.call('GET', KEYS[i]))
  if not is_live(rec, now) then
    table.insert(expired, seat)
  elseif not owns(rec, kind, id, session) then
    table.insert(denied, seat)
  else
    recs[i] = rec
  end
end

if #denied > 0 then
  return cjson.encode({status = 'denied', seats = denied})
end
if #expired > 0 then
  return cjson.encode({status = 'expired', seats = expired})
end

local target = now + ttl
local earliest, latest = nil, 0
local seats = {}
for i = 3, #KEYS do
  local rec = recs[i]
  local exp = math.max(tonumber(rec.expires_at), target)
  rec.expires_at = exp
  redis.call('SET', KEYS[i], cjson.encode(rec), 'PX', exp - now + grace)
  table.insert(seats, ARGV[i + 4])
  if earliest == nil or exp < earliest then earliest = exp end
  if exp > latest then latest = exp end
end
bump(KEYS[1], latest - now + grace)
bump(KEYS[2], latest - now + grace)

return cjson.encode({status = 'ok', seats = seats, expires_at = earliest})
"""

# KEYS: trip index, lock keys...
# ARGV: privileged, kind, id, session, now, owner prefix, seat codes...
_RELEASE = """
local privileged = ARGV[1] == '1'
local kind, id, session = ARGV[2], ARGV[3], ARGV[4]
local now, owner_prefix = tonumber(ARGV[5]), ARGV[6]

local released = {}
for i = 2, #KEYS do
  local seat = ARGV[i + 5]
  local rec = decode(redis.call('GET', KEYS[i]))
  if rec and (privileged or owns(rec, kind, id, session)) then
    redis.call('DEL', KEYS[i])
    redis.call('SREM', KEYS[1], seat)
    redis.call('SREM', owner_prefix .. rec.owner_kind .. ':' .. rec.owner_id, seat)
    if is_live(rec, now) then table.insert(released, seat) end
  end
end

return cjson.encode({status = 'ok', seats = released})
"""

# KEYS: lock key, source owner index, target owner index
# ARGV: source kind, id, session, target kind, id, session, now, max_seats, grace, lock prefix, seat
_REASSIGN = """
local now, max_seats, grace = tonumber(ARGV[7]), tonumber(ARGV[8]), tonumber(ARGV[9])
local lock_prefix, seat = ARGV[10], ARGV[11]

local rec = decode(redis.call('GET', KEYS[1]))
if not is_live(rec, now) or not owns(rec, ARGV[1], ARGV[2], ARGV[3]) then
  return 'lost'
end
if live_count(KEYS[3], lock_prefix, ARGV[4], ARGV[5], now) >= max_seats then
  return 'ceiling'
end

rec.owner_kind = ARGV[4]
rec.owner_id = ARGV[5]
rec.session_id = ARGV[6]
local remaining = tonumber(rec.expires_at) - now + grace
redis.call('SET', KEYS[1], cjson.encode(rec), 'PX', remaining)
redis.call('SREM', KEYS[2], seat)
redis.call('SADD', KEYS[3], seat)
bump(KEYS[3], remaining)
return 'moved'
"""

# KEYS: trip index
# ARGV: now, lock prefix, owner prefix, limit (0 = no limit)
_PURGE = """
local now, lock_prefix, owner_prefix = tonumber(ARGV[1]), ARGV[2], ARGV[3]
local limit = tonumber(ARGV[4])

local removed = 0
for _, seat in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  if limit > 0 and removed >= limit then break end
  local key = lock_prefix .. seat
  local rec = decode(redis.call('GET', key))
  if not rec then
    redis.call('SREM', KEYS[1], seat)
  elseif not is_live(rec, now) then
    redis.call('DEL', key)
    redis.call('SREM', KEYS[1], seat)
    redis.call('SREM', owner_prefix .. rec.owner_kind .. ':' .. rec.owner_id, seat)
    removed = removed + 1
  end
end
if redis.call('SCARD', KEYS[1]) == 0 then
  redis.call('DEL', KEYS[1])
end
return removed
"""


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _dt(ms) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _as_list(value) -> List[str]:
    # cjson encodes an empty Lua table as {}
    return list(value) if isinstance(value, list) else []


class RedisLockStore(LockStore):
    """Lock records as JSON strings under ``seat_lock:{trip}:{seat}``.

    Each mutating operation runs as one Lua script, so the whole batch check
    and write happens atomically on the server. Per-owner and per-trip sets
    index the records; keys also carry a PX expiry slightly past the logical
    ``expires_at`` so Redis bounds storage even without the sweeper.

    The client must be created with ``decode_responses=True``.
    """

    transient_errors = (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError)

    def __init__(self, client, key_grace: timedelta = timedelta(seconds=60)) -> None:
        self._redis = client
        self._grace_ms = int(key_grace.total_seconds() * 1000)
        self._acquire = client.register_script(_PRELUDE + _ACQUIRE)
        self._extend = client.register_script(_PRELUDE + _EXTEND)
        self._release = client.register_script(_PRELUDE + _RELEASE)
        self._reassign = client.register_script(_PRELUDE + _REASSIGN)
        self._purge = client.register_script(_PRELUDE + _PURGE)

    @staticmethod
    def _lock_key(trip_id: str, seat_code: str) -> str:
        return LOCK_KEY_TPL.format(trip_id=trip_id, seat_code=seat_code)

    @staticmethod
    def _owner_key(trip_id: str, owner: Actor) -> str:
        return OWNER_KEY_TPL.format(trip_id=trip_id, owner=owner.key)

    @staticmethod
    def _trip_key(trip_id: str) -> str:
        return TRIP_KEY_TPL.format(trip_id=trip_id)

    @staticmethod
    def _decode(trip_id: str, seat_code: str, raw: Optional[str]) -> Optional[SeatLock]:
        if not raw:
            return None
        data = json.loads(raw)
        return SeatLock(
            trip_id=trip_id,
            seat_code=seat_code,
            owner=Actor(ActorKind(data["owner_kind"]), data["owner_id"]),
            session_id=data.get("session_id") or None,
            locked_at=_dt(data["locked_at"]),
            expires_at=_dt(data["expires_at"]),
        )

    async def acquire(self, trip_id, seat_codes, owner, session_id, now, ttl, max_seats):
        keys = [self._owner_key(trip_id, owner), self._trip_key(trip_id)]
        keys += [self._lock_key(trip_id, seat) for seat in seat_codes]
        args = [
            owner.kind.value,
            owner.id,
            session_id or "",
            _ms(now),
            int(ttl.total_seconds() * 1000),
            max_seats,
            self._grace_ms,
            LOCK_KEY_TPL.format(trip_id=trip_id, seat_code=""),
            *seat_codes,
        ]
        res = json.loads(await self._acquire(keys=keys, args=args))
        return BatchOutcome(
            StoreStatus(res["status"]),
            seats=_as_list(res.get("seats")),
            already_held=_as_list(res.get("held")),
            held_count=int(res.get("held_count") or 0),
            expires_at=_dt(res.get("expires_at")),
        )

    async def extend(self, trip_id, seat_codes, owner, session_id, now, ttl):
        keys = [self._owner_key(trip_id, owner), self._trip_key(trip_id)]
        keys += [self._lock_key(trip_id, seat) for seat in seat_codes]
        args = [
            owner.kind.value,
            owner.id,
            session_id or "",
            _ms(now),
            int(ttl.total_seconds() * 1000),
            self._grace_ms,
            *seat_codes,
        ]
        res = json.loads(await self._extend(keys=keys, args=args))
        return BatchOutcome(
            StoreStatus(res["status"]),
            seats=_as_list(res.get("seats")),
            expires_at=_dt(res.get("expires_at")),
        )

    async def release(self, trip_id, seat_codes, owner, session_id, now):
        keys = [self._trip_key(trip_id)] + [self._lock_key(trip_id, seat) for seat in seat_codes]
        args = [
            "1" if owner is None else "0",
            owner.kind.value if owner else "",
            owner.id if owner else "",
            session_id or "",
            _ms(now),
            OWNER_KEY_TPL.format(trip_id=trip_id, owner=""),
            *seat_codes,
        ]
        res = json.loads(await self._release(keys=keys, args=args))
        return _as_list(res.get("seats"))

    async def reassign(self, trip_id, seat_code, source, source_session_id, target, target_session_id, now, max_seats):
        keys = [
            self._lock_key(trip_id, seat_code),
            self._owner_key(trip_id, source),
            self._owner_key(trip_id, target),
        ]
        args = [
            source.kind.value,
            source.id,
            source_session_id or "",
            target.kind.value,
            target.id,
            target_session_id or "",
            _ms(now),
            max_seats,
            self._grace_ms,
            LOCK_KEY_TPL.format(trip_id=trip_id, seat_code=""),
            seat_code,
        ]
        return ReassignStatus(await self._reassign(keys=keys, args=args))

    async def _load(self, trip_id: str, seat_codes) -> List[SeatLock]:
        seat_codes = sorted(seat_codes)
        if not seat_codes:
            return []
        raws = await self._redis.mget([self._lock_key(trip_id, seat) for seat in seat_codes])
        locks = []
        for seat, raw in zip(seat_codes, raws):
            rec = self._decode(trip_id, seat, raw)
            if rec is not None:
                locks.append(rec)
        return locks

    async def owner_locks(self, trip_id, owner, now):
        seats = await self._redis.smembers(self._owner_key(trip_id, owner))
        return [rec for rec in await self._load(trip_id, seats) if rec.is_live(now) and rec.owner == owner]

    async def trip_locks(self, trip_id, now):
        seats = await self._redis.smembers(self._trip_key(trip_id))
        return [rec for rec in await self._load(trip_id, seats) if rec.is_live(now)]

    async def purge_expired(self, now, limit=None):
        removed = 0
        async for key in self._redis.scan_iter(match=TRIP_KEY_PREFIX + "*", count=100):
            if limit is not None and removed >= limit:
                break
            tag = key[len(TRIP_KEY_PREFIX):]
            remaining = 0 if limit is None else limit - removed
            removed += int(
                await self._purge(
                    keys=[key],
                    args=[_ms(now), f"seat_lock:{tag}:", f"seat_lock_owner:{tag}:", remaining],
                )
            )
        return removed

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()
