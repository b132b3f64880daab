"""Runtime configuration for signpad.

Settings come from ``SIGNPAD_*`` environment variables and are parsed once
at startup. Everything has a default so a bare ``SignpadConfig()`` works
for tests and local use.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_SIGNPAD_DIR = Path.home() / ".signpad"
DEFAULT_PUBLIC_BASE_URL = "http://127.0.0.1:8400"


class OverlaySettings(BaseModel):
    """How captured values are drawn onto the page.

    Attributes:
        font_name: Standard PDF font for text and date values.
        font_size: Point size for text and date values.
        signature_scale: Factor applied to a signature image's native size.
    """

    font_name: str = "Helvetica"
    font_size: float = 12
    signature_scale: float = Field(0.5, gt=0)

    model_config = {"frozen": True}


class SignpadConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        data_dir: Root directory for templates, files and signed documents.
        public_base_url: Base URL used to build public file links and
            hand-off capture references.
        handoff_timeout_seconds: How long a primary device waits for a
            hand-off completion. ``None`` waits forever.
        overlay: Drawing settings for flattening.
    """

    data_dir: Path = DEFAULT_SIGNPAD_DIR
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    handoff_timeout_seconds: Optional[float] = 600.0
    overlay: OverlaySettings = Field(default_factory=OverlaySettings)

    model_config = {"frozen": True}

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("handoff_timeout_seconds")
    @classmethod
    def _zero_means_no_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            return None
        return v

    @classmethod
    def from_env(cls) -> "SignpadConfig":
        """Build a config from ``SIGNPAD_*`` environment variables."""
        overlay = OverlaySettings(
            font_name=os.getenv("SIGNPAD_FONT_NAME", "Helvetica"),
            font_size=float(os.getenv("SIGNPAD_FONT_SIZE", "12")),
            signature_scale=float(os.getenv("SIGNPAD_SIGNATURE_SCALE", "0.5")),
        )
        data_dir = os.getenv("SIGNPAD_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_SIGNPAD_DIR,
            public_base_url=os.getenv("SIGNPAD_PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL),
            handoff_timeout_seconds=float(os.getenv("SIGNPAD_HANDOFF_TIMEOUT", "600")),
            overlay=overlay,
        )
