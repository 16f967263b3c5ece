"""Config module to share settings across all modules in recordsheet."""

import logging
import sys
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

# Excel itself allows 31 characters; one is kept in reserve.
MAX_SHEETNAME_LENGTH = 30


class Settings(BaseModel):
    date_format: str = "yyyy-mm-dd"
    # Conventional class name suffixes stripped to derive a sheet name on import.
    sheet_name_suffixes: list[str] = ["RowHandler", "Handler"]
    source_sheet_prefix: Annotated[str, Field(min_length=1)] = "source for "
    freeze_header: bool = True
    auto_adjust_columns: bool = True
    hide_source_sheets: bool = True
    embed_pivot_classification: bool = False
    default_config: bool = False

    @field_validator("sheet_name_suffixes")
    @classmethod
    def longest_suffix_first(cls, value: list[str]) -> list[str]:
        # "RowHandler" must be tried before "Handler".
        return sorted((s for s in value if s), key=len, reverse=True)


# This parameter will be updated/set by load_config.
SETTINGS = Settings(default_config=True)


def load_config(config_file: Path | None = None, settings: Settings | None = None):
    """Replace the global SETTINGS from a toml file or a Settings instance.

    Without arguments (or with a config file that does not exist) the
    defaults are restored.
    """
    global SETTINGS  # noqa: PLW0603

    if config_file is not None and not config_file.exists():
        logger.warning('Configuration file "%s" not found.', config_file)
    if (True if config_file is None else not config_file.exists()) and (
        settings is None
    ):
        new_settings = Settings(default_config=True)
        logger.debug("Initializing default config.")
    elif config_file and settings is None:
        with config_file.open(mode="rb") as fp:
            conf = tomllib.load(fp)
        logger.debug("Config loaded from: %s", config_file)
        new_settings = Settings(**conf.get("recordsheet", conf))
    else:
        new_settings = Settings.model_validate_json(settings.model_dump_json())
        logger.debug("Refreshing global state of config.")

    SETTINGS = new_settings
    return SETTINGS
