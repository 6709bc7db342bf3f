import logging
import os
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from courier_dispatch.core.models import OrderPreview

logger = logging.getLogger(__name__)


class ClientState(BaseModel):
    role: str
    user_id: str
    last_resync_at: datetime | None = None
    unclaimed: list[OrderPreview] = Field(default_factory=list)


class JsonStateStore:
    """Client state kept in one JSON file so it survives a restart."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ClientState | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            return ClientState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable client state {self._path}: {e}")
            return None

    def save(self, state: ClientState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(state.model_dump_json(), encoding="utf-8")
        os.replace(tmp, self._path)

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
