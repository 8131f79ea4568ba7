from __future__ import annotations

from pydantic_settings import BaseSettings


class DdoctorSettings(BaseSettings):
    """Process-level settings loaded from environment / .env file.

    Probe definitions live in the YAML config passed on the command line;
    only knobs that are about the process itself live here.
    """

    model_config = {
        "env_prefix": "DDOCTOR_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Logging
    debug: bool = False
    log_level: str = "WARNING"

    # Seconds the status server waits for in-flight responses on shutdown
    shutdown_grace: float = 5.0

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level.upper()


settings = DdoctorSettings()
