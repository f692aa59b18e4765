"""Shared pydantic base for run snapshots and manifest documents."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model that rejects unknown fields.

    Run configurations are shared with the worker task while a run is active,
    and manifest keys are checked so a misspelt ``categories`` is not silently
    dropped.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")
