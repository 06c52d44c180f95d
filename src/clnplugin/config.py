"""Plugin configuration model using Pydantic."""

import logging
import os
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from clnplugin.exceptions import ConfigurationError
from clnplugin.protocol import MAX_RECORD_SIZE
from clnplugin.writer import DEFAULT_MAX_QUEUED

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "CLNPLUGIN_LOG_LEVEL"

LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


class PluginConfig(BaseModel):
    """Runtime configuration of a plugin.

    ``dynamic`` tells the host whether the plugin may be started and stopped
    at runtime. It can also be set through the legacy boolean constructor
    argument; an explicitly set field always wins over the legacy flag.
    """

    dynamic: bool = True
    # None = use CLNPLUGIN_LOG_LEVEL, then INFO
    log_level: LogLevelName | None = None
    # Forward Python log records to the host as "log" notifications
    forward_logs: bool = True
    read_chunk_size: int = Field(default=65536, gt=0)
    max_record_size: int = Field(default=MAX_RECORD_SIZE, gt=0)
    # Log records queued for the host while it is not reading
    max_queued_logs: int = Field(default=DEFAULT_MAX_QUEUED, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    def resolved_log_level(self) -> str:
        if self.log_level is not None:
            return self.log_level
        level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = "INFO"
        return level

    @classmethod
    def resolve(
        cls,
        config: "PluginConfig | Mapping[str, Any] | bool | None" = None,
        dynamic: bool | None = None,
    ) -> "PluginConfig":
        """Build a config from any supported constructor form.

        Precedence for ``dynamic``: a field set explicitly on the config
        object or mapping, then the legacy flag (``dynamic=`` or a bare bool
        passed as ``config``), then the default of True.
        """
        legacy_flag = dynamic
        if isinstance(config, bool):
            if legacy_flag is None:
                legacy_flag = config
            config = None

        if config is None:
            resolved = cls()
        elif isinstance(config, PluginConfig):
            resolved = config
        elif isinstance(config, Mapping):
            try:
                resolved = cls.model_validate(dict(config))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid plugin configuration: {e}") from e
        else:
            raise ConfigurationError(
                f"Unsupported plugin configuration type: {type(config).__name__}"
            )

        if legacy_flag is not None:
            if "dynamic" in resolved.model_fields_set:
                if resolved.dynamic != legacy_flag:
                    logger.warning(
                        "Both a config 'dynamic' field and the legacy flag are set. "
                        "Using the config field, ignoring the legacy flag."
                    )
            else:
                resolved = resolved.model_copy(update={"dynamic": bool(legacy_flag)})
        return resolved
