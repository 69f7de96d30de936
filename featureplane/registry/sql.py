"""SQLAlchemy-backed registry for shared, multi-writer deployments."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Type

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ..definitions import DataSource, Definition, Entity, FeatureView, ObjectKind
from ..errors import ConcurrentModificationError, FeaturePlaneError
from .base import MaterializationInterval, RegistrySnapshot, RegistryStore, RegistryTransaction

__all__ = ["SqlRegistryStore"]

_MODELS: Dict[ObjectKind, Type[Definition]] = {
    ObjectKind.ENTITY: Entity,
    ObjectKind.DATA_SOURCE: DataSource,
    ObjectKind.FEATURE_VIEW: FeatureView,
}


class Base(DeclarativeBase):
    """Declarative base for registry tables."""


class ProjectRow(Base):
    __tablename__ = "featureplane_projects"

    project: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ObjectRow(Base):
    __tablename__ = "featureplane_objects"

    project: Mapped[str] = mapped_column(
        String(255), ForeignKey("featureplane_projects.project", ondelete="CASCADE"), primary_key=True
    )
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)


class IntervalRow(Base):
    __tablename__ = "featureplane_intervals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_view: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_featureplane_intervals_view", "project", "feature_view"),)


class SqlRegistryStore(RegistryStore):
    """Registry persisted in relational tables.

    Every commit runs in a single database transaction. The project row carries
    the registry version; definition changes bump it with a conditional UPDATE
    so that of two racing writers exactly one succeeds.
    """

    def __init__(self, url: str | None = None, *, engine: Engine | None = None) -> None:
        super().__init__()
        if engine is None:
            if not url:
                raise ValueError("SqlRegistryStore requires either a url or an engine")
            engine = create_engine(url, future=True)
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
        Base.metadata.create_all(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def snapshot(self, project: str) -> RegistrySnapshot:
        with self._session() as session:
            return self._read_snapshot(session, project)

    def commit(self, transaction: RegistryTransaction) -> RegistrySnapshot:
        project = transaction.project
        now = datetime.now(timezone.utc)
        try:
            with self._session() as session:
                row = session.execute(
                    select(ProjectRow).where(ProjectRow.project == project).with_for_update()
                ).scalar_one_or_none()
                self._verify_version(transaction, row.version if row is not None else 0)
                if row is None:
                    session.add(
                        ProjectRow(
                            project=project,
                            version=1 if transaction.has_definition_changes else 0,
                            last_updated=now,
                        )
                    )
                    session.flush()
                elif transaction.has_definition_changes:
                    result = session.execute(
                        update(ProjectRow)
                        .where(ProjectRow.project == project, ProjectRow.version == transaction.base_version)
                        .values(version=transaction.base_version + 1, last_updated=now)
                    )
                    if result.rowcount != 1:
                        raise ConcurrentModificationError(
                            f"Registry for project '{project}' changed concurrently",
                            detail={"project": project, "expected_version": transaction.base_version},
                        )
                else:
                    row.last_updated = now
                self._write_changes(session, transaction)
                return self._read_snapshot(session, project)
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                f"Registry for project '{project}' changed concurrently",
                detail={"project": project},
            ) from exc
        except SQLAlchemyError as exc:
            raise FeaturePlaneError(
                f"Registry commit for project '{project}' failed: {exc}",
                detail={"project": project},
            ) from exc

    def delete_project(self, project: str) -> None:
        with self._session() as session:
            session.execute(delete(IntervalRow).where(IntervalRow.project == project))
            session.execute(delete(ObjectRow).where(ObjectRow.project == project))
            session.execute(delete(ProjectRow).where(ProjectRow.project == project))

    def list_projects(self) -> List[str]:
        with self._session() as session:
            return list(session.execute(select(ProjectRow.project).order_by(ProjectRow.project)).scalars())

    def _write_changes(self, session: Session, transaction: RegistryTransaction) -> None:
        project = transaction.project
        for ref in transaction.deletes:
            session.execute(
                delete(ObjectRow).where(
                    ObjectRow.project == project,
                    ObjectRow.kind == ref.kind.value,
                    ObjectRow.name == ref.name,
                )
            )
            if ref.kind is ObjectKind.FEATURE_VIEW:
                session.execute(
                    delete(IntervalRow).where(
                        IntervalRow.project == project, IntervalRow.feature_view == ref.name
                    )
                )
        for ref, definition in transaction.upserts.items():
            session.merge(
                ObjectRow(
                    project=project,
                    kind=ref.kind.value,
                    name=ref.name,
                    payload=definition.model_dump_json(),
                )
            )
        session.flush()
        for feature_view, interval in transaction.interval_appends:
            exists = session.get(ObjectRow, (project, ObjectKind.FEATURE_VIEW.value, feature_view))
            if exists is None:
                raise ConcurrentModificationError(
                    f"Feature view '{feature_view}' was removed before its materialization "
                    "interval could be recorded",
                    detail={"project": project, "feature_view": feature_view},
                )
            session.add(
                IntervalRow(
                    project=project,
                    feature_view=feature_view,
                    start_time=interval.start_time,
                    end_time=interval.end_time,
                    recorded_at=interval.recorded_at,
                )
            )
        session.flush()

    def _read_snapshot(self, session: Session, project: str) -> RegistrySnapshot:
        row = session.get(ProjectRow, project)
        if row is None:
            return RegistrySnapshot(project=project)
        objects: Dict[ObjectKind, Dict[str, Definition]] = {kind: {} for kind in _MODELS}
        for obj in session.execute(
            select(ObjectRow).where(ObjectRow.project == project).order_by(ObjectRow.kind, ObjectRow.name)
        ).scalars():
            kind = ObjectKind(obj.kind)
            objects[kind][obj.name] = _MODELS[kind].model_validate_json(obj.payload)
        intervals: Dict[str, List[MaterializationInterval]] = {}
        for interval in session.execute(
            select(IntervalRow).where(IntervalRow.project == project).order_by(IntervalRow.id)
        ).scalars():
            intervals.setdefault(interval.feature_view, []).append(
                MaterializationInterval(
                    start_time=interval.start_time,
                    end_time=interval.end_time,
                    recorded_at=interval.recorded_at,
                )
            )
        return RegistrySnapshot(
            project=project,
            version=row.version,
            entities=objects[ObjectKind.ENTITY],
            data_sources=objects[ObjectKind.DATA_SOURCE],
            feature_views=objects[ObjectKind.FEATURE_VIEW],
            intervals=intervals,
            last_updated=row.last_updated,
        )
