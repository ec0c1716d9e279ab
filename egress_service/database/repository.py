"""SQLAlchemy-backed store for egress descriptors."""

import logging
import time
from typing import Any, Dict, List

from livekit.api import EgressInfo
from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from egress_service.database.models import Base, EgressRecord
from egress_service.jobs.models import status_name
from egress_service.jobs.registry import EgressStore


logger = logging.getLogger(__name__)


def _mask_url(url: str) -> str:
    """Mask credentials in a database URL for logging."""
    if "://" in url:
        scheme, rest = url.split("://", 1)
        if "@" in rest:
            _, host_part = rest.split("@", 1)
            return f"{scheme}://***@{host_part}"
    return url


class SQLEgressStore(EgressStore):
    """
    Persists the latest ``EgressInfo`` of every egress in ``egress_records``.

    Writes are small single-row upserts issued by the registry whenever a
    descriptor changes.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self._engine = create_engine(database_url, **self._get_engine_config(database_url, echo))
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info(f"Egress store initialized with URL: {_mask_url(database_url)}")

    @staticmethod
    def _get_engine_config(database_url: str, echo: bool) -> Dict[str, Any]:
        config: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            config.update({
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            })
        return config

    def create_tables(self) -> None:
        """Create the ``egress_records`` table if needed."""
        Base.metadata.create_all(self._engine)
        logger.info("Egress tables created")

    def save(self, info: EgressInfo) -> None:
        now = time.time_ns()
        with self._session_factory() as session:
            try:
                record = session.get(EgressRecord, info.egress_id)
                if record is None:
                    record = EgressRecord(egress_id=info.egress_id, created_at=now)
                    session.add(record)
                record.room_name = info.room_name
                record.status = status_name(info.status)
                record.error = info.error or None
                record.info = info.SerializeToString()
                record.updated_at = info.updated_at or now
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise

    def load(self) -> List[EgressInfo]:
        with self._session_factory() as session:
            records = session.execute(
                select(EgressRecord).order_by(EgressRecord.created_at, EgressRecord.egress_id)
            ).scalars().all()

        infos = []
        for record in records:
            info = EgressInfo()
            info.ParseFromString(record.info)
            infos.append(info)
        return infos

    def delete(self, egress_id: str) -> None:
        with self._session_factory() as session:
            record = session.get(EgressRecord, egress_id)
            if record is not None:
                session.delete(record)
                session.commit()

    def close(self) -> None:
        """Dispose of pooled connections."""
        self._engine.dispose()
