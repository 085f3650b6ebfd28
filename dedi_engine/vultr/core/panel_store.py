"""
Persistence of the shared panel location across restarts.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..utils.logging import get_logger, log_function_call

logger = get_logger(__name__)


@dataclass(frozen=True)
class PanelLocation:
    """Where the rendered panel lives on the front-end."""

    channel_id: str | None = None
    message_id: str | None = None


@dataclass
class PanelState:
    """Process-wide panel pointer, mutated only by the render serializer."""

    location: PanelLocation | None = None
    last_update: datetime | None = None

    @property
    def channel_id(self) -> str | None:
        return self.location.channel_id if self.location else None

    @property
    def message_id(self) -> str | None:
        return self.location.message_id if self.location else None


class PanelStore:
    """Loads and saves PanelState as a small JSON document."""

    def __init__(self, state_file: Path = Path("panel_data.json")) -> None:
        self.state_file = state_file

    @log_function_call
    def load(self) -> PanelState:
        """Load panel state; a missing or unreadable file yields an empty state."""
        if not self.state_file.exists():
            logger.info("No existing panel data found, starting fresh")
            return PanelState()

        try:
            with open(self.state_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load panel data from {self.state_file}: {e}")
            return PanelState()

        if not isinstance(data, dict):
            logger.error(f"Ignoring malformed panel data in {self.state_file}")
            return PanelState()

        # Unknown keys are ignored so older processes can read newer files
        channel_id = data.get("channelId")
        message_id = data.get("messageId")
        location = None
        if channel_id or message_id:
            location = PanelLocation(channel_id=channel_id, message_id=message_id)

        last_update = None
        if data.get("lastUpdate"):
            try:
                last_update = datetime.fromisoformat(data["lastUpdate"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid lastUpdate: {data['lastUpdate']!r}")

        state = PanelState(location=location, last_update=last_update)
        logger.info(f"Loaded persistent panel data: {state}")
        return state

    @log_function_call
    def save(self, state: PanelState) -> bool:
        """Write panel state; failures are logged and reported as False."""
        payload = {
            "messageId": state.message_id,
            "channelId": state.channel_id,
            "lastUpdate": state.last_update.isoformat() if state.last_update else None,
        }
        try:
            tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
            with open(tmp_file, "w") as f:
                json.dump(payload, f, indent=2)
            tmp_file.replace(self.state_file)
            logger.debug(f"Panel data saved to {self.state_file}")
            return True
        except OSError as e:
            logger.error(f"Failed to save panel data: {e}")
            return False
