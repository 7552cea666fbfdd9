"""JSON persistence of the project/session registry."""

import json
import logging
from pathlib import Path

from .errors import StateLoadError
from .models import State

logger = logging.getLogger(__name__)


class JsonStateStore:
    """Loads and saves State as a single JSON document."""

    def __init__(self, state_file: str):
        self.state_file = Path(state_file).expanduser()

    def load(self) -> State:
        """
        Load state from disk.

        A missing file is a fresh install and yields an empty State.

        Raises:
            StateLoadError: the file exists but cannot be read or parsed
        """
        if not self.state_file.exists():
            logger.info(f"No state file at {self.state_file}, starting empty")
            return State()

        try:
            with open(self.state_file) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value is not an object")
            state = State.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StateLoadError(f"Failed to load state from {self.state_file}: {e}") from e

        logger.info(f"Loaded {len(state.projects)} projects and {len(state.sessions)} sessions from {self.state_file}")
        return state

    def save(self, state: State) -> bool:
        """
        Save state using temp file + rename so readers never see a partial write.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        temp_file = self.state_file.with_suffix('.tmp')
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            temp_file.replace(self.state_file)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state to {self.state_file}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False
