from pydantic import BaseModel, Field

PROGRESS_ERROR = -1


class ProgressUpdate(BaseModel):
    """Transient progress notification for one project. Never persisted."""

    project_id: str
    progress: int = Field(ge=-1, le=100)
    stage: str
    message: str = ""

    @property
    def is_error(self) -> bool:
        return self.progress == PROGRESS_ERROR
