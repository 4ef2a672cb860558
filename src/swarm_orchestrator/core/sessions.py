"""Worker execution sessions: a subprocess with captured output."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from subprocess import STDOUT, Popen, TimeoutExpired

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5.0


class SessionError(Exception):
    """Raised when a session cannot be opened or is unknown."""


@dataclass
class Session:
    session_id: str
    key: str
    task_id: str
    cwd: str
    output_file: str
    pid: int
    started_at: datetime
    process: Popen = field(repr=False)
    exit_code: int | None = None


def make_session_id(key: str, when: datetime | None = None) -> str:
    when = when or datetime.now()
    return f"swarm-{key}-{when.strftime('%Y%m%d-%H%M%S')}"


class SessionManager:
    """Registry of live worker processes, owned by one orchestrator."""

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def open(
        self,
        key: str,
        cmd: list[str],
        cwd: str | Path,
        env: dict | None = None,
        task_id: str | None = None,
    ) -> Session:
        """Start `cmd` in `cwd`, capturing stdout and stderr to a log file.

        `task_id` names the task that owns the session; it defaults to `key`.
        """
        with self._lock:
            for existing in self._sessions.values():
                if existing.key == key and existing.exit_code is None:
                    raise SessionError(
                        f"Workspace {key} already has a running session {existing.session_id}"
                    )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        session_id = make_session_id(key)
        # Same-second respawns get a numeric suffix
        candidate, n = session_id, 2
        while (self.output_dir / f"{candidate}.log").exists():
            candidate = f"{session_id}-{n}"
            n += 1
        session_id = candidate
        output_file = self.output_dir / f"{session_id}.log"

        try:
            with open(output_file, "w") as f:
                proc = Popen(
                    cmd,
                    cwd=str(cwd),
                    stdout=f,
                    stderr=STDOUT,
                    env=env,
                )
        except OSError as e:
            raise SessionError(f"Could not start {cmd[0]}: {e}") from e

        session = Session(
            session_id=session_id,
            key=key,
            task_id=task_id or key,
            cwd=str(cwd),
            output_file=str(output_file),
            pid=proc.pid,
            started_at=datetime.now(timezone.utc),
            process=proc,
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info("Opened session %s (PID %s) in %s", session_id, proc.pid, cwd)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def all_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def poll(self, session_id: str) -> int | None:
        """Exit code of the session's process, or None while it runs."""
        session = self.get(session_id)
        if session is None:
            raise SessionError(f"Unknown session: {session_id}")
        if session.exit_code is None:
            session.exit_code = session.process.poll()
        return session.exit_code

    def is_alive(self, session_id: str) -> bool:
        session = self.get(session_id)
        return session is not None and self.poll(session_id) is None

    def read_output(self, session_id: str) -> str | None:
        """Captured output of a session, live or finished."""
        session = self.get(session_id)
        path = Path(session.output_file) if session else self.output_dir / f"{session_id}.log"
        if not path.exists():
            return None
        return path.read_text(errors="replace")

    def kill(self, session_id: str) -> bool:
        """Terminate and forget a session. Unknown sessions are a no-op."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        proc = session.process
        if proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=KILL_GRACE_SECONDS)
            except ProcessLookupError:
                pass  # Already exited
            except TimeoutExpired:
                logger.warning("Session %s ignored SIGTERM, killing", session_id)
                proc.kill()
            logger.info("Killed session %s (PID %s)", session_id, session.pid)
        return True

    def forget(self, session_id: str) -> bool:
        """Drop a finished session from the registry without signalling it."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def kill_all(self) -> list[str]:
        killed = []
        for session in self.all_sessions():
            if self.kill(session.session_id):
                killed.append(session.session_id)
        return killed
