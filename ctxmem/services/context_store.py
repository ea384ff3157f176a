"""Context store: durable context records and project aggregates."""

import json
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..context.models import (
    EXPORT_SCHEMA_VERSION,
    ContextRecord,
    ExportDocument,
    ImportSummary,
    ProjectRecord,
)
from ..models.context import ContextEntry
from ..models.project import ProjectEntry
from ..utils.errors import ImportValidationError, ValidationError
from ..utils.logger import get_logger
from .storage import StorageService

logger = get_logger(__name__)

_ORDER_COLUMNS = {
    "created_at": ContextEntry.created_at,
    "last_accessed_at": ContextEntry.last_accessed_at,
    "access_count": ContextEntry.access_count,
    "original_tokens": ContextEntry.original_tokens,
}


class ContextStore:
    """Record-level operations on top of a shared StorageService.

    Every write that touches a context also refreshes the owning project's
    aggregate in the same transaction, so ``context_count`` and
    ``total_tokens`` always match the contexts table.
    """

    def __init__(self, storage: StorageService, clock: Callable[[], datetime] = datetime.now):
        """Initialize context store.

        Args:
            storage: Process-wide storage handle
            clock: Source of "now", injectable for tests
        """
        self.storage = storage
        self.clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(
        self,
        record: ContextRecord,
        project_path: str | None = None,
        project_name: str | None = None,
    ) -> ContextRecord:
        """Insert or replace a context by id.

        A re-save keeps the first ``created_at`` and never moves access
        statistics backwards.
        """
        now = self.clock()
        async with self.storage.transaction("save_context") as db:
            stored, previous_key = await self._upsert(db, record)
            await self._ensure_project(db, record.project_key, now, project_path, project_name)
            await self._refresh_project_stats(db, record.project_key, now)
            if previous_key and previous_key != record.project_key:
                await self._refresh_project_stats(db, previous_key, now)

        logger.debug(
            "Context saved",
            extra={"context_id": record.id, "project_key": record.project_key},
        )
        return stored

    async def save_many(self, records: list[ContextRecord]) -> list[ContextRecord]:
        """Save a batch in one transaction."""
        if not records:
            return []

        now = self.clock()
        stored: list[ContextRecord] = []
        touched: set[str] = set()
        async with self.storage.transaction("save_contexts") as db:
            for record in records:
                saved, previous_key = await self._upsert(db, record)
                stored.append(saved)
                touched.add(record.project_key)
                if previous_key:
                    touched.add(previous_key)
            for key in sorted(touched):
                await self._ensure_project(db, key, now)
                await self._refresh_project_stats(db, key, now)

        logger.info("Contexts saved", extra={"count": len(stored), "projects": sorted(touched)})
        return stored

    async def update_access(self, context_id: str, at: datetime | None = None) -> ContextRecord | None:
        """Bump ``last_accessed_at`` and ``access_count`` in one statement.

        Returns:
            The updated record, or None if the id is unknown
        """
        at = at or self.clock()
        async with self.storage.transaction("update_access") as db:
            result = await db.execute(
                update(ContextEntry)
                .where(ContextEntry.id == context_id)
                .values(
                    last_accessed_at=func.max(ContextEntry.created_at, at),
                    access_count=ContextEntry.access_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                return None
            entry = await db.get(ContextEntry, context_id)
            return self._to_record(entry) if entry else None

    async def delete(self, context_id: str) -> bool:
        """Delete one context. Returns False if it did not exist."""
        now = self.clock()
        async with self.storage.transaction("delete_context") as db:
            entry = await db.get(ContextEntry, context_id)
            if entry is None:
                return False
            project_key = entry.project_key
            await db.delete(entry)
            await db.flush()
            await self._refresh_project_stats(db, project_key, now)
        return True

    async def delete_older_than(self, cutoff: datetime, project_key: str | None = None) -> int:
        """Delete contexts created before ``cutoff``.

        Returns:
            Number of contexts deleted
        """
        now = self.clock()
        conditions = [ContextEntry.created_at < cutoff]
        if project_key:
            conditions.append(ContextEntry.project_key == project_key)

        async with self.storage.transaction("delete_older_than") as db:
            keys = (
                await db.execute(select(ContextEntry.project_key).where(*conditions).distinct())
            ).scalars().all()
            if not keys:
                return 0
            result = await db.execute(delete(ContextEntry).where(*conditions))
            deleted = result.rowcount or 0
            for key in keys:
                await self._refresh_project_stats(db, key, now)

        logger.info(
            "Old contexts deleted",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted, "projects": list(keys)},
        )
        return deleted

    async def purge_project(self, project_key: str) -> int:
        """Remove a project and all its contexts.

        Returns:
            Number of contexts deleted
        """
        async with self.storage.transaction("purge_project") as db:
            result = await db.execute(delete(ContextEntry).where(ContextEntry.project_key == project_key))
            deleted = result.rowcount or 0
            await db.execute(delete(ProjectEntry).where(ProjectEntry.key == project_key))

        logger.info("Project purged", extra={"project_key": project_key, "deleted": deleted})
        return deleted

    async def register_project(
        self,
        project_key: str,
        path: str,
        name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProjectRecord:
        """Create or update a project's descriptive fields."""
        now = self.clock()
        async with self.storage.transaction("register_project") as db:
            project = await self._ensure_project(db, project_key, now, path, name)
            if metadata is not None:
                project.metadata_json = json.dumps(metadata, default=str)
            await self._refresh_project_stats(db, project_key, now)
            return ProjectRecord(**project.to_dict())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, context_id: str) -> ContextRecord | None:
        """Get a context by id without touching its access statistics."""
        async with self.storage.session("get_context") as db:
            entry = await db.get(ContextEntry, context_id)
            return self._to_record(entry) if entry else None

    async def list_by_project(
        self,
        project_key: str,
        limit: int = 100,
        offset: int = 0,
        order_by: str = "last_accessed_at",
        descending: bool = True,
    ) -> list[ContextRecord]:
        """List a project's contexts, one page at a time."""
        return await self.query_by_access(
            project_key=project_key,
            order_by=order_by,
            descending=descending,
            limit=limit,
            offset=offset,
        )

    async def query_by_access(
        self,
        project_key: str | None = None,
        accessed_after: datetime | None = None,
        accessed_before: datetime | None = None,
        min_access_count: int | None = None,
        exclude_ids: list[str] | None = None,
        order_by: str = "last_accessed_at",
        descending: bool = True,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[ContextRecord]:
        """Filter contexts on the indexed access columns.

        Args:
            project_key: Restrict to one project
            accessed_after: Inclusive lower bound on last access
            accessed_before: Exclusive upper bound on last access
            min_access_count: Inclusive lower bound on access count
            exclude_ids: Ids to leave out (e.g. records already cached)
            order_by: created_at, last_accessed_at, access_count or original_tokens
            descending: Sort direction
            limit: Page size (None for no limit)
            offset: Rows to skip

        Returns:
            Matching records
        """
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative", field="limit", value=limit)
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset", value=offset)

        column = self._order_column(order_by)
        query = select(ContextEntry).where(
            *self._access_filters(project_key, accessed_after, accessed_before, min_access_count, exclude_ids)
        )
        if descending:
            query = query.order_by(column.desc(), ContextEntry.id)
        else:
            query = query.order_by(column.asc(), ContextEntry.id)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self.storage.session("query_contexts") as db:
            entries = (await db.execute(query)).scalars().all()
            return [self._to_record(entry) for entry in entries]

    async def count_by_access(
        self,
        project_key: str | None = None,
        accessed_after: datetime | None = None,
        accessed_before: datetime | None = None,
        min_access_count: int | None = None,
        exclude_ids: list[str] | None = None,
    ) -> int:
        """Count contexts matching the same filters as :meth:`query_by_access`."""
        query = select(func.count(ContextEntry.id)).where(
            *self._access_filters(project_key, accessed_after, accessed_before, min_access_count, exclude_ids)
        )
        async with self.storage.session("count_contexts") as db:
            return (await db.execute(query)).scalar() or 0

    async def search(self, query: str, project_key: str | None = None, limit: int = 20) -> list[ContextRecord]:
        """Case-insensitive substring search over payloads and metadata."""
        if not query or not query.strip():
            return []

        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        statement = select(ContextEntry).where(
            or_(
                ContextEntry.compressed_payload.ilike(pattern, escape="\\"),
                ContextEntry.metadata_json.ilike(pattern, escape="\\"),
            )
        )
        if project_key:
            statement = statement.where(ContextEntry.project_key == project_key)
        statement = statement.order_by(ContextEntry.last_accessed_at.desc(), ContextEntry.id).limit(limit)

        async with self.storage.session("search_contexts") as db:
            entries = (await db.execute(statement)).scalars().all()
            return [self._to_record(entry) for entry in entries]

    async def get_project(self, project_key: str) -> ProjectRecord | None:
        async with self.storage.session("get_project") as db:
            project = await db.get(ProjectEntry, project_key)
            return ProjectRecord(**project.to_dict()) if project else None

    async def list_projects(self) -> list[ProjectRecord]:
        async with self.storage.session("list_projects") as db:
            projects = (
                await db.execute(select(ProjectEntry).order_by(ProjectEntry.updated_at.desc(), ProjectEntry.key))
            ).scalars().all()
            return [ProjectRecord(**project.to_dict()) for project in projects]

    async def get_stats(self, project_key: str | None = None) -> dict[str, Any]:
        """Get aggregate store statistics.

        Args:
            project_key: Restrict to one project

        Returns:
            Statistics dictionary; every field is 0 on an empty store
        """
        query = select(
            func.count(ContextEntry.id).label("total_contexts"),
            func.sum(ContextEntry.original_tokens).label("total_original_tokens"),
            func.sum(ContextEntry.compressed_tokens).label("total_compressed_tokens"),
            func.avg(ContextEntry.compression_ratio).label("average_ratio"),
            func.sum(ContextEntry.access_count).label("total_accesses"),
        )
        project_query = select(func.count(ProjectEntry.key))
        if project_key:
            query = query.where(ContextEntry.project_key == project_key)
            project_query = project_query.where(ProjectEntry.key == project_key)

        async with self.storage.session("context_stats") as db:
            row = (await db.execute(query)).one()
            projects = (await db.execute(project_query)).scalar() or 0

        total_original = row.total_original_tokens or 0
        total_compressed = row.total_compressed_tokens or 0
        return {
            "total_contexts": row.total_contexts or 0,
            "total_projects": projects,
            "total_original_tokens": total_original,
            "total_compressed_tokens": total_compressed,
            "tokens_saved": total_original - total_compressed,
            "average_ratio": round(row.average_ratio or 0, 4),
            "overall_ratio": round(1 - total_compressed / total_original, 4) if total_original else 0.0,
            "total_accesses": row.total_accesses or 0,
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_project(self, project_key: str) -> str:
        """Serialize one project and its contexts to a JSON document."""
        async with self.storage.session("export_project") as db:
            project = await db.get(ProjectEntry, project_key)
            entries = (
                await db.execute(
                    select(ContextEntry)
                    .where(ContextEntry.project_key == project_key)
                    .order_by(ContextEntry.created_at, ContextEntry.id)
                )
            ).scalars().all()
            document = ExportDocument(
                schema_version=EXPORT_SCHEMA_VERSION,
                exported_at=self.clock(),
                project=ProjectRecord(**project.to_dict()) if project else None,
                contexts=[self._to_record(entry).model_dump(mode="json") for entry in entries],
            )

        logger.info(
            "Project exported",
            extra={"project_key": project_key, "contexts": len(document.contexts)},
        )
        return document.model_dump_json(exclude={"projects"})

    async def export_all(self) -> str:
        """Serialize the whole store to a JSON document."""
        async with self.storage.session("export_all") as db:
            projects = (await db.execute(select(ProjectEntry).order_by(ProjectEntry.key))).scalars().all()
            entries = (
                await db.execute(
                    select(ContextEntry).order_by(ContextEntry.project_key, ContextEntry.created_at, ContextEntry.id)
                )
            ).scalars().all()
            document = ExportDocument(
                schema_version=EXPORT_SCHEMA_VERSION,
                exported_at=self.clock(),
                projects=[ProjectRecord(**project.to_dict()) for project in projects],
                contexts=[self._to_record(entry).model_dump(mode="json") for entry in entries],
            )

        logger.info(
            "Store exported",
            extra={"projects": len(document.projects), "contexts": len(document.contexts)},
        )
        return document.model_dump_json(exclude={"project"})

    async def import_all(self, payload: str | bytes | dict[str, Any]) -> ImportSummary:
        """Import an export document, all or nothing.

        Records are written verbatim (timestamps and access statistics
        included), replacing any record with the same id.

        Raises:
            ImportValidationError: If the document or any record is invalid
        """
        document = self._parse_document(payload)
        records = self._validate_records(document.contexts)
        projects = document.all_projects()

        now = self.clock()
        replaced = 0
        touched: set[str] = {project.key for project in projects}
        async with self.storage.transaction("import") as db:
            for project in projects:
                await self._import_project(db, project, now)
            for record in records:
                existing = await db.get(ContextEntry, record.id)
                if existing is not None:
                    replaced += 1
                    touched.add(existing.project_key)
                await db.merge(self._to_entry(record))
                touched.add(record.project_key)
            await db.flush()
            for key in sorted(touched):
                await self._ensure_project(db, key, now)
                await self._refresh_project_stats(db, key, now)

        summary = ImportSummary(
            schema_version=document.schema_version,
            projects=sorted(touched),
            imported=len(records),
            replaced=replaced,
        )
        logger.info("Import completed", extra=summary.model_dump())
        return summary

    @staticmethod
    def _parse_document(payload: str | bytes | dict[str, Any]) -> ExportDocument:
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ImportValidationError(f"Import payload is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ImportValidationError("Import payload must be a JSON object")

        try:
            return ExportDocument.model_validate(payload)
        except PydanticValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ImportValidationError(f"Invalid export document: {errors}") from e

    @staticmethod
    def _validate_records(contexts: list[dict[str, Any]]) -> list[ContextRecord]:
        records: list[ContextRecord] = []
        seen: set[str] = set()
        for index, raw in enumerate(contexts):
            record_id = raw.get("id") if isinstance(raw.get("id"), str) else None
            try:
                record = ContextRecord.model_validate(raw)
            except (PydanticValidationError, TypeError) as e:
                if isinstance(e, PydanticValidationError):
                    errors = "; ".join(
                        f"{'.'.join(str(loc) for loc in err['loc']) or 'record'}: {err['msg']}"
                        for err in e.errors()
                    )
                else:
                    errors = str(e)
                raise ImportValidationError(
                    f"Invalid context record at index {index}: {errors}",
                    record_index=index,
                    record_id=record_id,
                ) from e
            if record.id in seen:
                raise ImportValidationError(
                    f"Duplicate context id at index {index}: {record.id}",
                    record_index=index,
                    record_id=record.id,
                )
            seen.add(record.id)
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _upsert(self, db: AsyncSession, record: ContextRecord) -> tuple[ContextRecord, str | None]:
        """Write one record; returns the stored version and the previous project key."""
        existing = await db.get(ContextEntry, record.id)
        if existing is None:
            entry = self._to_entry(record)
            db.add(entry)
            await db.flush()
            return self._to_record(entry), None

        previous_key = existing.project_key
        existing.project_key = record.project_key
        existing.compressed_payload = record.compressed_payload
        existing.algorithm = record.algorithm
        existing.strategy = record.strategy
        existing.original_tokens = record.original_tokens
        existing.compressed_tokens = record.compressed_tokens
        existing.compression_ratio = record.compression_ratio
        existing.metadata_json = json.dumps(record.metadata, default=str)
        existing.last_accessed_at = max(existing.last_accessed_at, record.last_accessed_at)
        existing.access_count = max(existing.access_count, record.access_count)
        await db.flush()
        return self._to_record(existing), previous_key

    async def _ensure_project(
        self,
        db: AsyncSession,
        project_key: str,
        now: datetime,
        path: str | None = None,
        name: str | None = None,
    ) -> ProjectEntry:
        project = await db.get(ProjectEntry, project_key)
        if project is None:
            project = ProjectEntry(
                key=project_key,
                path=path or "",
                name=name,
                context_count=0,
                total_tokens=0,
                metadata_json="{}",
                created_at=now,
                updated_at=now,
            )
            db.add(project)
            await db.flush()
            logger.info("Project registered", extra={"project_key": project_key})
        else:
            if path:
                project.path = path
            if name:
                project.name = name
        return project

    async def _import_project(self, db: AsyncSession, record: ProjectRecord, now: datetime) -> None:
        project = await db.get(ProjectEntry, record.key)
        if project is None:
            db.add(
                ProjectEntry(
                    key=record.key,
                    path=record.path,
                    name=record.name,
                    context_count=0,
                    total_tokens=0,
                    metadata_json=json.dumps(record.metadata, default=str),
                    created_at=record.created_at,
                    updated_at=now,
                )
            )
            await db.flush()
            return

        project.path = record.path or project.path
        project.name = record.name or project.name
        if record.metadata:
            project.metadata_json = json.dumps(record.metadata, default=str)
        project.created_at = min(project.created_at, record.created_at)

    async def _refresh_project_stats(self, db: AsyncSession, project_key: str, now: datetime) -> None:
        """Recompute a project's aggregate from the contexts table."""
        project = await db.get(ProjectEntry, project_key)
        if project is None:
            return
        count, total = (
            await db.execute(
                select(
                    func.count(ContextEntry.id),
                    func.coalesce(func.sum(ContextEntry.original_tokens), 0),
                ).where(ContextEntry.project_key == project_key)
            )
        ).one()
        project.context_count = count or 0
        project.total_tokens = total or 0
        project.updated_at = now

    @staticmethod
    def _access_filters(
        project_key: str | None,
        accessed_after: datetime | None,
        accessed_before: datetime | None,
        min_access_count: int | None,
        exclude_ids: list[str] | None,
    ) -> list:
        conditions = []
        if project_key:
            conditions.append(ContextEntry.project_key == project_key)
        if accessed_after is not None:
            conditions.append(ContextEntry.last_accessed_at >= accessed_after)
        if accessed_before is not None:
            conditions.append(ContextEntry.last_accessed_at < accessed_before)
        if min_access_count is not None:
            conditions.append(ContextEntry.access_count >= min_access_count)
        if exclude_ids:
            conditions.append(ContextEntry.id.notin_(list(exclude_ids)))
        return conditions

    @staticmethod
    def _order_column(order_by: str):
        try:
            return _ORDER_COLUMNS[order_by]
        except KeyError as e:
            raise ValidationError(
                f"Cannot order contexts by {order_by}", field="order_by", value=order_by
            ) from e

    @staticmethod
    def _to_entry(record: ContextRecord) -> ContextEntry:
        return ContextEntry(
            id=record.id,
            project_key=record.project_key,
            compressed_payload=record.compressed_payload,
            algorithm=record.algorithm,
            strategy=record.strategy,
            original_tokens=record.original_tokens,
            compressed_tokens=record.compressed_tokens,
            compression_ratio=record.compression_ratio,
            metadata_json=json.dumps(record.metadata, default=str),
            created_at=record.created_at,
            last_accessed_at=record.last_accessed_at,
            access_count=record.access_count,
        )

    @staticmethod
    def _to_record(entry: ContextEntry) -> ContextRecord:
        return ContextRecord(**entry.to_dict())
