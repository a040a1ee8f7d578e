# pyright: reportUnusedImport=false
# flake8: noqa

from .config import (
    Settings,
    LanguageModelSettings,
    TracingSettings,
    ModelSource,
    PROVIDER_API_KEYS,
    check_credentials,
    serialize_settings,
    export_settings,
    create_default_config_file,
    load_settings,
)
