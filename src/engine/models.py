# src/engine/models.py
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


class ScanRecord(Base):
    __tablename__ = 'scans'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    tool = Column(String, nullable=True)
    command = Column(Text, nullable=True)
    status = Column(String, default=QUEUED)
    metadata_json = Column(Text, nullable=True)  # JSON string of the last status metadata
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)


class ScanLog(Base):
    __tablename__ = 'scan_logs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow)
    level = Column(String, default='info')
    message = Column(Text, nullable=True)
    raw_output = Column(Text, nullable=True)
