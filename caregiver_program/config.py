import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, model_validator

from caregiver_program.models import MAX_DELAY_HOURS

ENV_PREFIX = "CAREGIVER_PROGRAM_"

_ENV_FIELDS = {
    "FINAL_DAY": "final_day",
    "DELAY_HOURS": "default_delay_hours",
    "START_HOUR": "default_allowed_start_hour",
    "END_HOUR": "default_allowed_end_hour",
    "TIMEZONE": "default_timezone",
}


class ProgramSettings(BaseModel):
    """
    Program-wide constants. Per-caregiver records are seeded from these
    and can then be changed by admin actions.
    """

    final_day: int = Field(default=10, ge=1)
    default_delay_hours: float = Field(
        default=24, ge=0, le=MAX_DELAY_HOURS, allow_inf_nan=False
    )
    default_allowed_start_hour: int = Field(default=8, ge=0, le=23)
    default_allowed_end_hour: int = Field(default=20, ge=0, le=23)
    default_timezone: str = "UTC"

    @model_validator(mode="after")
    def _check_hours(self) -> "ProgramSettings":
        if self.default_allowed_start_hour > self.default_allowed_end_hour:
            raise ValueError(
                "default_allowed_start_hour must not be after "
                "default_allowed_end_hour"
            )
        return self

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> "ProgramSettings":
        environ = os.environ if environ is None else environ
        values = {
            field: environ[ENV_PREFIX + key]
            for key, field in _ENV_FIELDS.items()
            if ENV_PREFIX + key in environ
        }
        return cls.model_validate(values)
