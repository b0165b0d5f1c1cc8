"""
Active color persistence for production blue-green deployments.

The state file holds a single line ``<color> <revision>``. A legacy file that
only names the color reads as revision 0. Writes are serialised through an
exclusive lock on a sibling ``.lock`` file and land through a temp file plus
rename, so readers only ever see a complete line.
"""

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import StaleStateError
from .models import DEFAULT_COLOR, Color, DeploymentState, complement

logger = logging.getLogger('invoice_deploy.color_state')


class ColorStateStore:
    """Reads and writes which production color receives traffic"""

    def __init__(self, state_file: Path):
        self.state_file = Path(state_file)
        self.lock_file = self.state_file.with_name(self.state_file.name + '.lock')

    def read(self) -> DeploymentState:
        """Read the versioned record, falling back to the default color"""
        try:
            line = self.state_file.read_text().strip()
        except FileNotFoundError:
            return DeploymentState(active=DEFAULT_COLOR, revision=0)
        except OSError as e:
            logger.warning(f"Cannot read state file {self.state_file}: {e}")
            return DeploymentState(active=DEFAULT_COLOR, revision=0)

        parts = line.split()
        if not parts:
            return DeploymentState(active=DEFAULT_COLOR, revision=0)

        try:
            active = Color(parts[0].lower())
        except ValueError:
            logger.warning(f"Unknown color '{parts[0]}' in {self.state_file}, assuming {DEFAULT_COLOR.value}")
            return DeploymentState(active=DEFAULT_COLOR, revision=0)

        revision = 0
        if len(parts) > 1:
            try:
                revision = int(parts[1])
            except ValueError:
                logger.warning(f"Bad revision '{parts[1]}' in {self.state_file}, treating as 0")

        updated_at = datetime.fromtimestamp(self.state_file.stat().st_mtime)
        return DeploymentState(active=active, revision=revision, updated_at=updated_at)

    def get_active(self) -> Color:
        return self.read().active

    def get_inactive(self) -> Color:
        return complement(self.get_active())

    @contextmanager
    def _locked(self):
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, 'a') as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def set_active(self, color: Color, expected_revision: Optional[int] = None) -> DeploymentState:
        """Persist the active color, optionally as a compare-and-swap on revision"""
        with self._locked():
            current = self.read()
            if expected_revision is not None and current.revision != expected_revision:
                raise StaleStateError(expected_revision, current.revision)

            new_state = DeploymentState(
                active=color,
                revision=current.revision + 1,
                updated_at=datetime.now()
            )
            self._write(new_state)

        logger.info(f"Active color set to {color.value} (revision {new_state.revision})")
        return new_state

    def _write(self, state: DeploymentState):
        directory = self.state_file.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.state_file.name}.")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(f"{state.active.value} {state.revision}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
