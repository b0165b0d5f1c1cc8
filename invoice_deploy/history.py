"""SQLite ledger of deploy, switch and rollback runs"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import Color, DeploymentPhase, DeploymentRecord, Environment, RecordStatus

logger = logging.getLogger('invoice_deploy.history')


class DeploymentHistory:
    """Deployment tracking database"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._initialized = False

    def exists(self) -> bool:
        return self.db_path.is_file()

    def get_database_connection(self) -> sqlite3.Connection:
        """Get database connection with proper error handling."""
        try:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            logger.error(f"Database connection error: {e}")
            raise

    def initialize_database(self):
        """Create the deployments table"""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_database_connection()
        try:
            with conn:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS deployments (
                        deployment_id TEXT PRIMARY KEY,
                        environment TEXT NOT NULL,
                        operation TEXT NOT NULL,
                        target_color TEXT,
                        previous_color TEXT,
                        status TEXT NOT NULL,
                        phase TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        finished_at TEXT,
                        duration_seconds INTEGER,
                        initiated_by TEXT,
                        error_message TEXT
                    )
                ''')
        finally:
            conn.close()
        self._initialized = True

    def start(self, environment: Environment, operation: str, target_color: Optional[Color] = None,
              previous_color: Optional[Color] = None, initiated_by: str = "system") -> DeploymentRecord:
        """Insert an in-progress record"""
        self.initialize_database()
        started_at = datetime.now()
        record = DeploymentRecord(
            deployment_id=f"dep_{started_at.strftime('%Y%m%d_%H%M%S_%f')}",
            environment=environment,
            operation=operation,
            status=RecordStatus.IN_PROGRESS,
            phase=DeploymentPhase.PREPARING,
            started_at=started_at,
            target_color=target_color,
            previous_color=previous_color,
            initiated_by=initiated_by
        )
        self._save(record)
        return record

    def finish(self, record: DeploymentRecord, status: RecordStatus, phase: DeploymentPhase,
               error_message: Optional[str] = None) -> DeploymentRecord:
        """Close a record with its outcome"""
        record.status = status
        record.phase = phase
        record.error_message = error_message
        record.finished_at = datetime.now()
        record.duration_seconds = int((record.finished_at - record.started_at).total_seconds())
        self._save(record)
        return record

    def _save(self, record: DeploymentRecord):
        conn = self.get_database_connection()
        try:
            with conn:
                conn.execute('''
                    INSERT OR REPLACE INTO deployments
                    (deployment_id, environment, operation, target_color, previous_color, status, phase,
                     started_at, finished_at, duration_seconds, initiated_by, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    record.deployment_id,
                    record.environment.value,
                    record.operation,
                    record.target_color.value if record.target_color else None,
                    record.previous_color.value if record.previous_color else None,
                    record.status.value,
                    record.phase.value,
                    record.started_at.isoformat(),
                    record.finished_at.isoformat() if record.finished_at else None,
                    record.duration_seconds,
                    record.initiated_by,
                    record.error_message
                ))
        except sqlite3.Error as e:
            logger.error(f"Failed to save deployment record: {e}")
            raise
        finally:
            conn.close()

    def recent(self, environment: Environment, limit: int = 5) -> List[DeploymentRecord]:
        """Newest records first; empty when the database does not exist yet"""
        if not self.exists():
            return []

        conn = self.get_database_connection()
        try:
            rows = conn.execute('''
                SELECT * FROM deployments
                WHERE environment = ?
                ORDER BY started_at DESC
                LIMIT ?
            ''', (environment.value, limit)).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read deployment history: {e}")
            return []
        finally:
            conn.close()

        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> DeploymentRecord:
        return DeploymentRecord(
            deployment_id=row['deployment_id'],
            environment=Environment(row['environment']),
            operation=row['operation'],
            status=RecordStatus(row['status']),
            phase=DeploymentPhase(row['phase']),
            started_at=datetime.fromisoformat(row['started_at']),
            target_color=Color(row['target_color']) if row['target_color'] else None,
            previous_color=Color(row['previous_color']) if row['previous_color'] else None,
            finished_at=datetime.fromisoformat(row['finished_at']) if row['finished_at'] else None,
            duration_seconds=row['duration_seconds'],
            initiated_by=row['initiated_by'],
            error_message=row['error_message']
        )
