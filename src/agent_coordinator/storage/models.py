"""Queue records shared by the orchestrator and the task queue backends."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class SubTask(BaseModel):
    """One unit of work emitted by the breakdown stage.

    Only ``title`` and ``persona`` are interpreted; every other field the
    model produced is carried through untouched.
    """

    model_config = ConfigDict(extra="allow")

    title: str = ""
    persona: str
    subtask_id: str | None = None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
