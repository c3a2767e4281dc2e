"""Team awareness: is the lead session still waiting on teammates?

A lead agent that has spawned teammates looks idle while they work. Respawning
it then would clear the context the team depends on, so the controller asks
this watcher before every cycle.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from cli_agent_respawn.constants import TASKS_DIR, TEAMS_DIR
from cli_agent_respawn.models.team import TeamConfig, TeamTask

logger = logging.getLogger(__name__)

TEAM_CONFIG_FILE = "config.json"


class TeamWatcher:
    """Reads team configs and task lists from disk on demand."""

    def __init__(self, teams_dir: Optional[Path] = None, tasks_dir: Optional[Path] = None):
        self.teams_dir = Path(teams_dir) if teams_dir else TEAMS_DIR
        self.tasks_dir = Path(tasks_dir) if tasks_dir else TASKS_DIR

    def list_teams(self) -> List[TeamConfig]:
        if not self.teams_dir.is_dir():
            return []
        teams = []
        for entry in sorted(self.teams_dir.iterdir()):
            config_path = entry / TEAM_CONFIG_FILE
            if not config_path.is_file():
                continue
            data = self._read_json(config_path)
            if data is None:
                continue
            try:
                teams.append(TeamConfig.model_validate(data))
            except ValidationError as e:
                logger.debug(f"Ignoring malformed team config {config_path}: {e}")
        return teams

    def get_team_for_session(self, session_id: str) -> Optional[TeamConfig]:
        for team in self.list_teams():
            if team.lead_session_id == session_id:
                return team
        return None

    def get_tasks(self, team_name: str) -> List[TeamTask]:
        """Tasks for ``team_name``, internal bookkeeping tasks excluded."""
        task_dir = self.tasks_dir / team_name
        if not task_dir.is_dir():
            return []
        tasks = []
        for path in sorted(task_dir.glob("*.json")):
            data = self._read_json(path)
            if data is None:
                continue
            try:
                task = TeamTask.model_validate(data)
            except ValidationError:
                continue
            if not task.is_internal:
                tasks.append(task)
        return tasks

    def get_active_task_count(self, team_name: str) -> int:
        return sum(1 for t in self.get_tasks(team_name) if t.is_active)

    def has_active_teammates(self, session_id: str) -> bool:
        """True when the session leads a team with teammates and unfinished tasks."""
        team = self.get_team_for_session(session_id)
        if team is None or not team.teammates:
            return False
        active = self.get_active_task_count(team.name)
        if active:
            logger.info(
                f"Team {team.name}: {len(team.teammates)} teammates, {active} active tasks"
            )
        return active > 0

    @staticmethod
    def _read_json(path: Path) -> Optional[dict]:
        # Files may be rewritten or removed while we read them
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Could not read {path}: {e}")
            return None
        return data if isinstance(data, dict) else None
