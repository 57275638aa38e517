# src/engine/persistence.py
"""
ScanStore: durable scan records and log lines.

Writes are fire-and-forget from the engine's point of view: database errors are
logged and never propagate into a running scan.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from engine.models import RUNNING, TERMINAL_STATUSES, QUEUED, ScanLog, ScanRecord


def _record_to_dict(record: ScanRecord) -> dict:
    metadata = None
    if record.metadata_json:
        try:
            metadata = json.loads(record.metadata_json)
        except ValueError:
            metadata = record.metadata_json
    return {
        "scan_id": record.scan_id,
        "user_id": record.user_id,
        "tool": record.tool,
        "command": record.command,
        "status": record.status,
        "metadata": metadata,
        "error": record.error,
        "created_at": str(record.created_at),
        "started_at": str(record.started_at) if record.started_at else None,
        "finished_at": str(record.finished_at) if record.finished_at else None,
    }


class ScanStore:
    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    def create_scan(self, scan_id: str, user_id: str = None, tool: str = None, command: str = None) -> None:
        db = self.SessionLocal()
        try:
            record = db.query(ScanRecord).filter(ScanRecord.scan_id == scan_id).first()
            if record is None:
                db.add(ScanRecord(scan_id=scan_id, user_id=user_id, tool=tool, command=command, status=QUEUED))
            else:
                record.user_id = user_id or record.user_id
                record.tool = tool or record.tool
                record.command = command or record.command
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logging.error(f"[scan_id={scan_id}] Failed to create scan record: {e}")
        finally:
            db.close()

    def update_status(self, scan_id: str, status: str, metadata: Optional[dict] = None) -> None:
        db = self.SessionLocal()
        try:
            record = db.query(ScanRecord).filter(ScanRecord.scan_id == scan_id).first()
            if record is None:
                record = ScanRecord(scan_id=scan_id)
                db.add(record)
            record.status = status
            if metadata is not None:
                record.metadata_json = json.dumps(metadata, default=str)
            if status == RUNNING and record.started_at is None:
                record.started_at = datetime.utcnow()
            if status in TERMINAL_STATUSES:
                record.finished_at = datetime.utcnow()
                if metadata and metadata.get("execution_error"):
                    record.error = str(metadata["execution_error"])
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logging.error(f"[scan_id={scan_id}] Failed to update status to {status}: {e}")
        finally:
            db.close()

    def insert_log(self, scan_id: str, level: str, message: str, raw_output: str = None, timestamp: datetime = None) -> None:
        db = self.SessionLocal()
        try:
            db.add(ScanLog(
                scan_id=scan_id,
                timestamp=timestamp or datetime.utcnow(),
                level=level,
                message=message,
                raw_output=raw_output,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logging.error(f"[scan_id={scan_id}] Failed to insert log line: {e}")
        finally:
            db.close()

    def get_scan(self, scan_id: str) -> Optional[dict]:
        db = self.SessionLocal()
        try:
            record = db.query(ScanRecord).filter(ScanRecord.scan_id == scan_id).first()
            return _record_to_dict(record) if record else None
        finally:
            db.close()

    def get_status(self, scan_id: str) -> Optional[str]:
        db = self.SessionLocal()
        try:
            record = db.query(ScanRecord.status).filter(ScanRecord.scan_id == scan_id).first()
            return record.status if record else None
        except SQLAlchemyError as e:
            logging.error(f"[scan_id={scan_id}] Failed to read scan status: {e}")
            return None
        finally:
            db.close()

    def get_logs(self, scan_id: str, limit: int = 500, offset: int = 0) -> list:
        db = self.SessionLocal()
        try:
            logs = (
                db.query(ScanLog)
                .filter(ScanLog.scan_id == scan_id)
                .order_by(ScanLog.id.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [{
                "timestamp": str(log.timestamp),
                "level": log.level,
                "message": log.message,
                "raw_output": log.raw_output,
            } for log in logs]
        finally:
            db.close()

    def history(self, user_id: str = None, status: str = None, limit: int = 20, offset: int = 0) -> list:
        db = self.SessionLocal()
        try:
            query = db.query(ScanRecord)
            if user_id:
                query = query.filter(ScanRecord.user_id == user_id)
            if status:
                query = query.filter(ScanRecord.status == status)
            records = query.order_by(ScanRecord.created_at.desc()).offset(offset).limit(limit).all()
            return [_record_to_dict(record) for record in records]
        finally:
            db.close()
