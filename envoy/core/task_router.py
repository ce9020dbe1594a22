"""Task submission: turn a prompt into a running agent session."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from envoy.core.models import CLIType
from envoy.core.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedTask:
    """Result of submitting a task."""

    task_id: str
    session_id: str
    cli: CLIType
    working_directory: str


class TaskRouter:
    """Routes submitted tasks to a CLI type and working directory, then starts a session.

    Spaces map a space id (a workspace the user picked in the UI) to a
    directory. Unknown spaces fall back to the default working directory.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        default_cli: Optional[CLIType] = None,
        default_working_dir: Optional[str] = None,
        spaces: Optional[Mapping[str, str]] = None,
    ) -> None:
        sessions_cfg = session_manager.config.sessions
        self.session_manager = session_manager
        self.default_cli = default_cli or CLIType.from_str(sessions_cfg.default_cli)
        self.default_working_dir = default_working_dir or sessions_cfg.default_working_dir
        self.spaces: dict[str, str] = dict(spaces or {})

    def resolve_working_directory(
        self, space_id: Optional[str] = None, working_directory: Optional[str] = None
    ) -> str:
        """Explicit directory wins, then the space's directory, then the default."""
        if working_directory:
            return str(Path(working_directory).expanduser())
        if space_id:
            space_dir = self.spaces.get(space_id)
            if space_dir:
                return str(Path(space_dir).expanduser())
            logger.warning("Unknown space %s; using default working directory", space_id)
        return str(Path(self.default_working_dir).expanduser())

    async def submit_task(
        self,
        prompt: str,
        *,
        cli: Optional[CLIType] = None,
        space_id: Optional[str] = None,
        working_directory: Optional[str] = None,
        environment: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> RoutedTask:
        """Start a session for a new task.

        Raises:
            ValueError: If the prompt is empty
            ProcessSpawnFailed: If the agent could not be started (the session
                stays registered as failed)
        """
        if not prompt.strip():
            raise ValueError("Task prompt must not be empty")

        task_id = str(uuid.uuid4())
        chosen_cli = cli or self.default_cli
        workdir = self.resolve_working_directory(space_id, working_directory)
        logger.info("Routing task %s to %s in %s", task_id[:8], chosen_cli.value, workdir)

        session = await self.session_manager.create_session(
            task_id,
            chosen_cli,
            prompt,
            working_directory=workdir,
            environment=environment,
            timeout=timeout,
        )
        return RoutedTask(task_id=task_id, session_id=session.id, cli=chosen_cli, working_directory=workdir)
