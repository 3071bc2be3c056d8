from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from .database import Base


class Connection(Base):
    """A saved database connection (MySQL or Redis)."""
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False, default="mysql")  # mysql, redis
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False)
    username = Column(String(255), nullable=True)
    database_name = Column(String(255), nullable=True)

    # Kubernetes target - set for connections discovered inside a cluster
    namespace = Column(String(255), nullable=True)
    service_name = Column(String(255), nullable=True)
    service_port = Column(Integer, nullable=True)

    # Port forward currently serving this connection
    forward_id = Column(String(64), nullable=True)
    forward_local_port = Column(Integer, nullable=True)
    forward_status = Column(String(20), nullable=True)  # pending, active, error, idle

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_cluster_backed(self) -> bool:
        return bool(self.namespace and self.service_name and self.service_port)
