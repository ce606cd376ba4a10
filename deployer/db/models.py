"""
SQLAlchemy models for deploy job persistence.
Timestamps are epoch milliseconds so the queue can compare them directly.
"""
from sqlalchemy import BigInteger, Column, Float, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import relationship

from deployer.db.database import Base


class DeployJob(Base):
    """A queued build-and-deploy job."""
    __tablename__ = "deploy_jobs"

    id = Column(Text, primary_key=True, index=True)
    name = Column(Text, nullable=False, default="deploy")
    data = Column(Text, nullable=False)  # JSON submission payload
    state = Column(Text, nullable=False, index=True)  # waiting, active, completed, failed
    progress = Column(Integer, nullable=False, default=0)
    result = Column(Text, nullable=True)  # JSON
    failed_reason = Column(Text, nullable=True)
    attempts_made = Column(Integer, nullable=False, default=0)

    # Options (persisted per job so any worker process applies the same policy)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_delay_ms = Column(Integer, nullable=False, default=5000)
    backoff_multiplier = Column(Float, nullable=False, default=2.0)
    keep_completed = Column(Integer, nullable=True)
    keep_failed = Column(Integer, nullable=True)
    completed_max_age_ms = Column(BigInteger, nullable=True)
    failed_max_age_ms = Column(BigInteger, nullable=True)

    # Lease held by the worker running the current attempt
    lease_token = Column(Text, nullable=True)
    lease_owner = Column(Text, nullable=True)
    lease_expires_at = Column(BigInteger, nullable=True)

    # Timestamps (epoch ms)
    timestamp = Column(BigInteger, nullable=False)  # enqueued
    available_at = Column(BigInteger, nullable=False)  # earliest next claim
    processed_on = Column(BigInteger, nullable=True)
    finished_on = Column(BigInteger, nullable=True)

    logs = relationship(
        "DeployJobLog",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="DeployJobLog.id",
    )

    __table_args__ = (
        Index("ix_deploy_jobs_state_available", "state", "available_at"),
        Index("ix_deploy_jobs_state_finished", "state", "finished_on"),
    )


class DeployJobLog(Base):
    """One append-only log line of a deploy job."""
    __tablename__ = "deploy_job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        Text, ForeignKey("deploy_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line = Column(Text, nullable=False)
    created_at = Column(BigInteger, nullable=False)

    job = relationship("DeployJob", back_populates="logs")
