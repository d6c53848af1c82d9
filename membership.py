#!/usr/bin/env python3
"""
Cluster membership index.

Every onboarded cluster gets an owner row in the `cluster_member` table so
the management plane's portal can resolve who may see which cluster.
Writes are idempotent: registering an already-indexed owner is a no-op.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from errors import MembershipError
from models import ClusterManager

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ClusterMember(Base):
    __tablename__ = "cluster_member"
    __table_args__ = (UniqueConstraint("namespace", "cluster", "member_id", "attribute"),)

    id          = Column(Integer, primary_key=True, autoincrement=True)
    namespace   = Column(String(255), nullable=False, index=True)
    cluster     = Column(String(255), nullable=False, index=True)
    member_id   = Column(String(255), nullable=False, index=True)
    member_name = Column(String(255))
    attribute   = Column(String(50), nullable=False, default="user")
    role        = Column(String(50), nullable=False, default="admin")
    status      = Column(String(50), nullable=False, default="owner")
    created_at  = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<ClusterMember(cluster='{self.namespace}/{self.cluster}', member='{self.member_id}', status='{self.status}')>"


class MembershipIndex:
    def __init__(self, url: str):
        options = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            options["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # an in-memory database lives and dies with its connection
                options["poolclass"] = StaticPool
        self._engine = create_engine(url, **options)
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False)

    def init_db(self) -> None:
        """Call once at startup"""
        Base.metadata.create_all(self._engine)
        logger.info(f"Membership index initialised ({self._engine.url.get_backend_name()})")

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def register(self, cluster_manager: ClusterManager) -> bool:
        """Index the owner of a cluster. Returns False if already indexed."""
        owner = cluster_manager.owner
        try:
            with self._session() as session:
                existing = (
                    session.query(ClusterMember)
                    .filter_by(
                        namespace=cluster_manager.namespace,
                        cluster=cluster_manager.name,
                        member_id=owner,
                        attribute="user",
                    )
                    .first()
                )
                if existing:
                    return False
                session.add(
                    ClusterMember(
                        namespace=cluster_manager.namespace,
                        cluster=cluster_manager.name,
                        member_id=owner,
                        member_name=owner,
                        attribute="user",
                        role="admin",
                        status="owner",
                        created_at=datetime.now(timezone.utc),
                    )
                )
        except SQLAlchemyError as e:
            raise MembershipError(f"failed to index cluster {cluster_manager.name}: {e}") from e
        logger.info(f"Indexed cluster {cluster_manager.namespace}/{cluster_manager.name} owner {owner}")
        return True

    def unregister(self, namespace: str, cluster: str) -> int:
        """Drop every member row of a cluster. Returns the number of rows removed."""
        try:
            with self._session() as session:
                removed = session.query(ClusterMember).filter_by(namespace=namespace, cluster=cluster).delete()
        except SQLAlchemyError as e:
            raise MembershipError(f"failed to remove cluster {cluster} from index: {e}") from e
        logger.info(f"Removed {removed} member rows of cluster {namespace}/{cluster}")
        return removed
