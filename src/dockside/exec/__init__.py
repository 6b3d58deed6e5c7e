"""Exec sessions: interactive and one-shot command execution in containers.

  manager           ExecSessionManager: session table, lifecycle, command()
  shell             shell auto-detection probes
  _session_stream   SessionStream: lifecycle-tracking wrapper for TTY streams
"""

from dockside.exec._session_stream import SessionStream
from dockside.exec.manager import ExecSessionManager
from dockside.exec.shell import DEFAULT_SHELLS, probe_shell, probe_shells

__all__ = [
    "DEFAULT_SHELLS",
    "ExecSessionManager",
    "SessionStream",
    "probe_shell",
    "probe_shells",
]
