"""
Audit-trailed record store
==========================

Owns disasters, reports and resources in SQLite (aiosqlite, WAL mode).

- one writer connection; every mutation is a single transaction under the
  write lock, so audit appends to the same disaster never interleave
- a separate reader connection only ever sees committed transactions
- report/resource mutations append to the *parent disaster's* audit trail
- after a commit (still under the lock) the geo index is updated and one
  MutationEvent is published, so events leave in commit order

Ownership checks belong to the caller; ``owner_id`` is exposed for that.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiosqlite
from pydantic import ValidationError

from .errors import (
    ResponseError, InvalidInput, NotFound, GeocodingFailed, StoreInconsistency,
)
from .geo import GeoIndex, validate_radius
from .models import (
    AuditEntry, Disaster, GeoPoint, MutationEvent, NearbyResource, Report, Resource,
    VerificationOutcome,
)
from .providers import UNKNOWN_LOCATION

logger = logging.getLogger(__name__)

DB_PATH = "response.sqlite"

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS disasters (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  location_name TEXT NOT NULL,
  lon REAL,
  lat REAL,
  description TEXT NOT NULL DEFAULT '',
  tags TEXT NOT NULL DEFAULT '[]',
  owner_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  audit_trail TEXT NOT NULL DEFAULT '[]'
);
CREATE TABLE IF NOT EXISTS reports (
  id TEXT PRIMARY KEY,
  disaster_id TEXT NOT NULL REFERENCES disasters(id) ON DELETE CASCADE,
  user_id TEXT NOT NULL,
  content TEXT NOT NULL,
  image_url TEXT,
  verification_status TEXT NOT NULL DEFAULT 'pending',
  created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS resources (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  disaster_id TEXT NOT NULL REFERENCES disasters(id) ON DELETE CASCADE,
  name TEXT NOT NULL,
  location_name TEXT NOT NULL,
  lon REAL NOT NULL,
  lat REAL NOT NULL,
  category TEXT NOT NULL,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS reports_disaster_id_idx ON reports (disaster_id);
CREATE INDEX IF NOT EXISTS resources_disaster_id_idx ON resources (disaster_id);
CREATE INDEX IF NOT EXISTS resources_category_idx ON resources (category);
"""

VERDICTS = ("verified", "unverified")


async def _prep(db: aiosqlite.Connection):
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute("PRAGMA busy_timeout=7000;")  # 7s
    await db.execute("PRAGMA foreign_keys=ON;")
    await db.commit()

async def connect(path: str) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path, timeout=15)
    db.row_factory = aiosqlite.Row
    await _prep(db)
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Optional[str], field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"Missing required field: {field}.")
    return value.strip()


def _require_tags(tags) -> List[str]:
    if not isinstance(tags, (list, tuple)) or not tags:
        raise InvalidInput("tags must be a non-empty list of strings.")
    out = []
    for t in tags:
        if not isinstance(t, str) or not t.strip():
            raise InvalidInput("tags must be a non-empty list of strings.")
        out.append(t.strip())
    return out


# ---------------- row mapping ----------------

def _point(row) -> Optional[GeoPoint]:
    if row["lon"] is None or row["lat"] is None:
        return None
    return GeoPoint(lon=row["lon"], lat=row["lat"])

def _disaster(row) -> Disaster:
    return Disaster(
        id=row["id"], title=row["title"], location_name=row["location_name"],
        location=_point(row), description=row["description"],
        tags=json.loads(row["tags"]), owner_id=row["owner_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        audit_trail=[AuditEntry(**e) for e in json.loads(row["audit_trail"])],
    )

def _report(row) -> Report:
    return Report(
        id=row["id"], disaster_id=row["disaster_id"], user_id=row["user_id"],
        content=row["content"], image_url=row["image_url"],
        verification_status=row["verification_status"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )

def _resource(row) -> Resource:
    return Resource(
        id=row["id"], disaster_id=row["disaster_id"], name=row["name"],
        location_name=row["location_name"], location=_point(row),
        category=row["category"], created_at=datetime.fromisoformat(row["created_at"]),
        seq=row["seq"],
    )


class _Tx:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.after_commit: List[Callable[[], None]] = []


class RecordStore:
    def __init__(self, path: str = DB_PATH, gateway=None, index: Optional[GeoIndex] = None,
                 broadcaster=None, clock: Callable[[], datetime] = now_utc):
        self.path = path
        self.gateway = gateway
        self.index = index if index is not None else GeoIndex()
        self.broadcaster = broadcaster
        self._now = clock
        self._writer: Optional[aiosqlite.Connection] = None
        self._reader: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._shared = path == ":memory:"

    # ---------------- lifecycle ----------------

    async def open(self) -> "RecordStore":
        self._writer = await connect(self.path)
        for stmt in CREATE_SQL.strip().split(";"):
            s = stmt.strip()
            if s:
                await self._writer.execute(s)
        await self._writer.commit()
        # an in-memory database only exists on its own connection
        self._reader = self._writer if self._shared else await connect(self.path)

        async with self._writer.execute("SELECT * FROM resources") as cur:
            rows = await cur.fetchall()
        for row in rows:
            self.index.upsert(_resource(row))
        logger.info(f"[DB] opened {self.path}; indexed {len(rows)} resource(s)")
        return self

    async def close(self) -> None:
        if self._reader is not None and self._reader is not self._writer:
            await self._reader.close()
        if self._writer is not None:
            await self._writer.close()
        self._reader = self._writer = None

    # ---------------- plumbing ----------------

    def _read_guard(self):
        return self._write_lock if self._shared else contextlib.nullcontext()

    async def _fetchone(self, sql: str, params: tuple = ()):
        async with self._read_guard():
            async with self._reader.execute(sql, params) as cur:
                return await cur.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()):
        async with self._read_guard():
            async with self._reader.execute(sql, params) as cur:
                return await cur.fetchall()

    async def _rollback(self) -> None:
        try:
            await self._writer.rollback()
        except aiosqlite.Error as e:
            logger.error(f"[DB][ERROR] rollback failed: {e}")

    @asynccontextmanager
    async def _transaction(self, label: str):
        async with self._write_lock:
            tx = _Tx(self._writer)
            try:
                yield tx
                await self._writer.commit()
            except ResponseError:
                await self._rollback()
                raise
            except Exception as e:
                await self._rollback()
                logger.error(f"[DB][ERROR] {label} rolled back: {e}")
                raise StoreInconsistency(f"{label} failed and was rolled back.") from e
            except BaseException:
                await self._rollback()
                raise
            for step in tx.after_commit:
                try:
                    step()
                except Exception as e:
                    logger.error(f"[DB][ERROR] post-commit step for {label} failed: {e}")

    def _publish(self, tx: _Tx, kind: str, action: str, disaster_id: str, payload: Dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        event = MutationEvent(kind=kind, action=action, disaster_id=disaster_id, payload=payload)
        tx.after_commit.append(lambda: self.broadcaster.publish(event))

    async def _mutate_disaster(self, db: aiosqlite.Connection, disaster_id: str, action: str,
                               actor_id: str, changes: Optional[Dict[str, Any]] = None) -> Disaster:
        """Apply field changes and append one audit entry in a single UPDATE."""
        async with db.execute("SELECT audit_trail FROM disasters WHERE id = ?", (disaster_id,)) as cur:
            row = await cur.fetchone()
        if row is None:
            raise NotFound(f"Disaster not found: {disaster_id}")

        trail = json.loads(row["audit_trail"])
        trail.append({"action": action, "actor_id": actor_id, "timestamp": self._now().isoformat()})
        changes = dict(changes or {})
        if "tags" in changes:
            changes["tags"] = json.dumps(changes["tags"])
        changes["audit_trail"] = json.dumps(trail)

        cols = ", ".join(f"{k} = ?" for k in changes)
        await db.execute(f"UPDATE disasters SET {cols} WHERE id = ?", (*changes.values(), disaster_id))
        async with db.execute("SELECT * FROM disasters WHERE id = ?", (disaster_id,)) as cur:
            return _disaster(await cur.fetchone())

    async def _geocode(self, location_name: str) -> GeoPoint:
        result = await self.gateway.geocode(location_name)
        data = result.unwrap()
        if result.status != "ok" or not isinstance(data, dict):
            raise GeocodingFailed(f"Could not geocode the provided location: {location_name!r}.")
        try:
            return GeoPoint(lon=data["lon"], lat=data["lat"])
        except (KeyError, TypeError, ValidationError):
            raise GeocodingFailed(f"Geocoder returned no usable point for {location_name!r}.")

    async def _require_disaster(self, disaster_id: str) -> None:
        if await self._fetchone("SELECT 1 FROM disasters WHERE id = ?", (disaster_id,)) is None:
            raise NotFound(f"Disaster not found: {disaster_id}")

    # ---------------- disasters ----------------

    async def create_disaster(self, actor_id: str, title: str, location_name: str,
                              tags: List[str], description: str = "") -> Disaster:
        title = _require_text(title, "title")
        location_name = _require_text(location_name, "location_name")
        tags = _require_tags(tags)
        now = self._now()
        disaster = Disaster(
            id=str(uuid.uuid4()), title=title, location_name=location_name,
            description=description or "", tags=tags, owner_id=actor_id, created_at=now,
            audit_trail=[AuditEntry(action="create", actor_id=actor_id, timestamp=now)],
        )
        async with self._transaction("create_disaster") as tx:
            await tx.db.execute("""
                INSERT INTO disasters (id, title, location_name, description, tags, owner_id, created_at, audit_trail)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                disaster.id, disaster.title, disaster.location_name, disaster.description,
                json.dumps(disaster.tags), disaster.owner_id, now.isoformat(),
                json.dumps([e.model_dump(mode="json") for e in disaster.audit_trail]),
            ))
            self._publish(tx, "disaster", "created", disaster.id, disaster.model_dump(mode="json"))
        logger.info(f"[DB] disaster created id={disaster.id} title={disaster.title!r} owner={actor_id}")
        return disaster

    async def get_disaster(self, disaster_id: str) -> Disaster:
        row = await self._fetchone("SELECT * FROM disasters WHERE id = ?", (disaster_id,))
        if row is None:
            raise NotFound(f"Disaster not found: {disaster_id}")
        return _disaster(row)

    async def list_disasters(self, tag: Optional[str] = None) -> List[Disaster]:
        if tag:
            rows = await self._fetchall("""
                SELECT * FROM disasters
                WHERE EXISTS (SELECT 1 FROM json_each(disasters.tags) WHERE json_each.value = ?)
                ORDER BY created_at DESC
            """, (tag,))
        else:
            rows = await self._fetchall("SELECT * FROM disasters ORDER BY created_at DESC")
        return [_disaster(r) for r in rows]

    async def update_disaster(self, disaster_id: str, actor_id: str, *, title: Optional[str] = None,
                              location_name: Optional[str] = None, description: Optional[str] = None,
                              tags: Optional[List[str]] = None) -> Disaster:
        changes: Dict[str, Any] = {}
        if title is not None:
            changes["title"] = _require_text(title, "title")
        if location_name is not None:
            changes["location_name"] = _require_text(location_name, "location_name")
        if description is not None:
            changes["description"] = description
        if tags is not None:
            changes["tags"] = _require_tags(tags)
        if not changes:
            raise InvalidInput("No fields provided for update.")

        async with self._transaction("update_disaster") as tx:
            disaster = await self._mutate_disaster(tx.db, disaster_id, "update", actor_id, changes)
            self._publish(tx, "disaster", "updated", disaster.id, disaster.model_dump(mode="json"))
        logger.info(f"[DB] disaster updated id={disaster_id} by={actor_id} fields={sorted(changes)}")
        return disaster

    async def delete_disaster(self, disaster_id: str, actor_id: str) -> Dict[str, Any]:
        """Remove a disaster with its reports and resources in one transaction."""
        async with self._transaction("delete_disaster") as tx:
            async with tx.db.execute("SELECT 1 FROM disasters WHERE id = ?", (disaster_id,)) as cur:
                if await cur.fetchone() is None:
                    raise NotFound(f"Disaster not found: {disaster_id}")
            reports = await tx.db.execute("DELETE FROM reports WHERE disaster_id = ?", (disaster_id,))
            resources = await tx.db.execute("DELETE FROM resources WHERE disaster_id = ?", (disaster_id,))
            await tx.db.execute("DELETE FROM disasters WHERE id = ?", (disaster_id,))
            summary = {
                "id": disaster_id,
                "deleted_by": actor_id,
                "reports_removed": reports.rowcount,
                "resources_removed": resources.rowcount,
            }
            tx.after_commit.append(lambda: self.index.remove_disaster(disaster_id))
            self._publish(tx, "disaster", "deleted", disaster_id, summary)
        logger.info(f"[DB] disaster deleted id={disaster_id} by={actor_id} "
                    f"reports={summary['reports_removed']} resources={summary['resources_removed']}")
        return summary

    async def locate_disaster(self, disaster_id: str, actor_id: str, description: str) -> Disaster:
        """Extract a place name from free text, geocode it and pin the disaster there."""
        description = _require_text(description, "description")
        await self._require_disaster(disaster_id)

        extracted = (await self.gateway.extract_location(description)).unwrap()
        if not extracted or extracted == UNKNOWN_LOCATION:
            raise InvalidInput("Could not extract a valid location from the provided description.")
        point = await self._geocode(extracted)

        async with self._transaction("locate_disaster") as tx:
            disaster = await self._mutate_disaster(tx.db, disaster_id, "locate", actor_id, {
                "location_name": extracted, "lon": point.lon, "lat": point.lat,
            })
            self._publish(tx, "disaster", "updated", disaster.id, disaster.model_dump(mode="json"))
        logger.info(f"[DB] disaster located id={disaster_id} at {extracted} ({point.lat}, {point.lon})")
        return disaster

    # ---------------- reports ----------------

    async def create_report(self, disaster_id: str, actor_id: str, content: str,
                            image_url: Optional[str] = None) -> Report:
        content = _require_text(content, "content")
        report = Report(
            id=str(uuid.uuid4()), disaster_id=disaster_id, user_id=actor_id, content=content,
            image_url=(image_url or None), verification_status="pending", created_at=self._now(),
        )
        async with self._transaction("create_report") as tx:
            await self._mutate_disaster(tx.db, disaster_id, "create_report", actor_id)
            await tx.db.execute("""
                INSERT INTO reports (id, disaster_id, user_id, content, image_url, verification_status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                report.id, disaster_id, actor_id, report.content, report.image_url,
                report.verification_status, report.created_at.isoformat(),
            ))
            self._publish(tx, "report", "created", disaster_id, report.model_dump(mode="json"))
        logger.info(f"[DB] report created id={report.id} disaster={disaster_id} user={actor_id}")
        return report

    async def get_report(self, disaster_id: str, report_id: str) -> Report:
        row = await self._fetchone(
            "SELECT * FROM reports WHERE id = ? AND disaster_id = ?", (report_id, disaster_id))
        if row is None:
            raise NotFound(f"Report not found: {report_id}")
        return _report(row)

    async def list_reports(self, disaster_id: str) -> List[Report]:
        await self._require_disaster(disaster_id)
        rows = await self._fetchall(
            "SELECT * FROM reports WHERE disaster_id = ? ORDER BY created_at DESC", (disaster_id,))
        return [_report(r) for r in rows]

    async def update_report_verification(self, disaster_id: str, report_id: str, actor_id: str,
                                         image_url: Optional[str] = None) -> VerificationOutcome:
        """
        Re-run image verification for a report, starting from its current status.

        A verdict (verified/unverified) is written with a ``verify_report``
        audit entry; an inconclusive answer leaves the report untouched.
        """
        report = await self.get_report(disaster_id, report_id)
        url = image_url or report.image_url
        if not url:
            raise InvalidInput("Image URL is required for verification.")

        result = await self.gateway.verify_image(url)
        data = result.unwrap() or {}
        message = data.get("message", "") if isinstance(data, dict) else ""
        status = data.get("status") if isinstance(data, dict) else None
        if result.status != "ok" or status not in VERDICTS:
            logger.info(f"[DB] verification inconclusive for report={report_id}; status stays {report.verification_status}")
            return VerificationOutcome(report=report, message=message, changed=False)

        async with self._transaction("update_report_verification") as tx:
            cur = await tx.db.execute(
                "UPDATE reports SET verification_status = ? WHERE id = ? AND disaster_id = ?",
                (status, report_id, disaster_id))
            if cur.rowcount == 0:
                raise NotFound(f"Report not found: {report_id}")
            await self._mutate_disaster(tx.db, disaster_id, "verify_report", actor_id)
            async with tx.db.execute("SELECT * FROM reports WHERE id = ?", (report_id,)) as c:
                updated = _report(await c.fetchone())
            self._publish(tx, "report", "updated", disaster_id, updated.model_dump(mode="json"))
        logger.info(f"[DB] report verified id={report_id} {report.verification_status} -> {status}")
        return VerificationOutcome(report=updated, message=message, changed=True)

    # ---------------- resources ----------------

    async def create_resource(self, disaster_id: str, actor_id: str, name: str,
                              location_name: str, category: str) -> Resource:
        """Geocode first; nothing is written or indexed unless a point comes back."""
        name = _require_text(name, "name")
        location_name = _require_text(location_name, "location_name")
        category = _require_text(category, "type")
        await self._require_disaster(disaster_id)

        point = await self._geocode(location_name)
        created_at = self._now()
        async with self._transaction("create_resource") as tx:
            await self._mutate_disaster(tx.db, disaster_id, "create_resource", actor_id)
            rid = str(uuid.uuid4())
            cur = await tx.db.execute("""
                INSERT INTO resources (id, disaster_id, name, location_name, lon, lat, category, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (rid, disaster_id, name, location_name, point.lon, point.lat, category, created_at.isoformat()))
            resource = Resource(
                id=rid, disaster_id=disaster_id, name=name, location_name=location_name,
                location=point, category=category, created_at=created_at, seq=cur.lastrowid,
            )
            tx.after_commit.append(lambda: self.index.upsert(resource))
            self._publish(tx, "resource", "created", disaster_id, resource.model_dump(mode="json"))
        logger.info(f"[DB] resource created id={resource.id} disaster={disaster_id} at {location_name}")
        return resource

    async def get_resource(self, disaster_id: str, resource_id: str) -> Resource:
        row = await self._fetchone(
            "SELECT * FROM resources WHERE id = ? AND disaster_id = ?", (resource_id, disaster_id))
        if row is None:
            raise NotFound(f"Resource not found: {resource_id}")
        return _resource(row)

    async def delete_resource(self, disaster_id: str, resource_id: str, actor_id: str) -> Resource:
        async with self._transaction("delete_resource") as tx:
            async with tx.db.execute(
                "SELECT * FROM resources WHERE id = ? AND disaster_id = ?", (resource_id, disaster_id)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                raise NotFound(f"Resource not found: {resource_id}")
            resource = _resource(row)
            await tx.db.execute("DELETE FROM resources WHERE id = ?", (resource_id,))
            await self._mutate_disaster(tx.db, disaster_id, "delete_resource", actor_id)
            tx.after_commit.append(lambda: self.index.remove(resource_id))
            self._publish(tx, "resource", "deleted", disaster_id, resource.model_dump(mode="json"))
        logger.info(f"[DB] resource deleted id={resource_id} disaster={disaster_id}")
        return resource

    async def list_resources(self, disaster_id: str, category: Optional[str] = None) -> List[Resource]:
        await self._require_disaster(disaster_id)
        if category:
            rows = await self._fetchall("""
                SELECT * FROM resources WHERE disaster_id = ? AND category = ?
                ORDER BY created_at DESC, seq DESC
            """, (disaster_id, category))
        else:
            rows = await self._fetchall(
                "SELECT * FROM resources WHERE disaster_id = ? ORDER BY created_at DESC, seq DESC",
                (disaster_id,))
        return [_resource(r) for r in rows]

    async def nearby_resources(self, disaster_id: str, center: GeoPoint, radius_m: float,
                               category: Optional[str] = None) -> List[NearbyResource]:
        radius_m = validate_radius(radius_m)
        await self._require_disaster(disaster_id)
        await self._reconcile_index(disaster_id)
        hits = self.index.query_radius(center, radius_m, disaster_id, category)
        logger.info(f"[Geo] {len(hits)} resource(s) within {radius_m:.0f}m of "
                    f"({center.lat}, {center.lon}) for disaster {disaster_id}")
        return hits

    async def _reconcile_index(self, disaster_id: str) -> None:
        rows = await self._fetchall("SELECT id FROM resources WHERE disaster_id = ?", (disaster_id,))
        if {r["id"] for r in rows} == self.index.ids(disaster_id):
            return
        logger.warning(f"[Geo] index diverged from store for disaster {disaster_id}; rebuilding")
        # rebuild from the writer's view under the lock so no commit slips between read and replace
        async with self._write_lock:
            async with self._writer.execute(
                "SELECT * FROM resources WHERE disaster_id = ?", (disaster_id,)
            ) as cur:
                rows = await cur.fetchall()
            self.index.replace(disaster_id, [_resource(r) for r in rows])
