# driver.py
# Page Driver contract.
#
# The driver owns the live page: it executes one tool call at a time and
# reports back a plain mapping, either {success: true, ...tool fields} or
# {success: false, code, reason, hint?, retryable}. Failures are values,
# not exceptions. Detecting CAPTCHA/login walls is also the driver's job.

from typing import Protocol

from pydantic import BaseModel, Field


class InterventionSignal(BaseModel):
    """The page needs a human before the run can continue."""

    kind: str = Field(..., description="captcha, login, consent, ...")
    message: str = Field(default="", description="Shown to the operator while paused.")
    url: str | None = None


class PageDriver(Protocol):
    async def execute(self, tool: str, args: dict) -> dict: ...

    async def detect_intervention(self) -> InterventionSignal | None: ...
