"""
Read and write configuration file.

Settings are read, in order of priority, from arguments given in code,
from the config.toml file in the working directory, and from
environment variables with the LMPIPE_ prefix (nested fields use a
double underscore, as in LMPIPE_MAJOR__TEMPERATURE).

The tracing settings and the API credentials are read from the
environment only, using the variable names of the LangSmith and model
provider clients, so that they are never written to config.toml.

This file also contains the definitions of the models supported in the
package.
"""

import os
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import (
    AliasChoices,
    Field,
    SecretStr,
    field_validator,
    model_validator,
    BaseModel,
)
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from lmpipe.errors import ConfigurationError

# Define supported models. These models must also be defined
# in the model factory of the language framework
ModelSource = Literal['OpenAI', 'Anthropic', 'Mistral', 'Gemini', 'Debug']

# Primitive values allowed in provider-specific parameters
ProviderParamValue = str | int | float | bool

DEFAULT_CONFIG_FILE = "config.toml"
ENV_PREFIX = "LMPIPE_"

# Environment variables holding the credentials of the generation
# services. The Debug source runs locally and needs none.
PROVIDER_API_KEYS: dict[str, str] = {
    'OpenAI': "OPENAI_API_KEY",
    'Anthropic': "ANTHROPIC_API_KEY",
    'Mistral': "MISTRAL_API_KEY",
    'Gemini': "GOOGLE_API_KEY",
}


class LanguageModelSettings(BaseModel):
    """
    Specification of language sources and models.

    Attributes:
        model: model specification, as 'provider/model'
        temperature: float between 0.0 and 2.0; 0.0 requests greedy,
            near-deterministic output
        max_tokens: max number of generated tokens
        max_retries: max number of retries, delegated to the
            provider client
        timeout: timeout when waiting for response
        provider_params: provider-specific parameters
    """

    model: str = Field(
        description="Model specification in the form "
        + "'model_provider/model' (e.g., 'OpenAI/gpt-4o-mini')"
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Controls randomness in model responses (0.0-2.0)",
    )
    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of tokens to generate",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts of the provider "
        + "client",
    )
    timeout: float | None = Field(
        default=None, gt=0, description="Request timeout in seconds"
    )
    provider_params: dict[str, ProviderParamValue] = Field(
        default_factory=dict,
        description="Provider-specific parameters (e.g., seed for OpenAI)",
    )

    model_config = SettingsConfigDict(frozen=True, extra='forbid')

    def __hash__(self) -> int:
        # provider_params is a dict, hashed as a sorted tuple
        return hash(
            (
                self.model,
                self.temperature,
                self.max_tokens,
                self.max_retries,
                self.timeout,
                tuple(sorted(self.provider_params.items())),
            )
        )

    def get_model_source(self) -> ModelSource:
        return self.model.split('/')[0]  # type: ignore

    def get_model_name(self) -> str:
        return self.model.split('/')[1]

    def from_instance(self, **changes: Any) -> 'LanguageModelSettings':
        """A copy of these settings with the given fields changed. The
        copy is validated anew."""
        data = self.model_dump()
        data.update(changes)
        return LanguageModelSettings(**data)

    @field_validator('model', mode='after')
    @classmethod
    def validate_model_spec(cls, spec: str) -> str:
        cleaned_spec = spec.strip()
        if not cleaned_spec:
            raise ValueError("Model specification is empty")
        if '\n' in cleaned_spec or '\r' in cleaned_spec:
            raise ValueError(
                "Model specification cannot contain newlines or carriage"
                + " returns."
            )
        tokens = cleaned_spec.split('/')
        if len(tokens) != 2 or not tokens[1].strip():
            raise ValueError(
                "Model specification must contain the model provider and "
                + "the model name separated by a single '/'.",
            )
        source = tokens[0].strip()
        if source not in ModelSource.__args__:
            raise ValueError(
                f"Invalid model provider: '{source}'. "
                + f"Must be one of {ModelSource.__args__}."
            )
        return source + '/' + tokens[1].strip()

    @model_validator(mode='after')
    def validate_provider_params(self) -> Self:
        """Validate provider-specific parameters based on the source."""
        ALLOWED_PARAMS = {
            'OpenAI': {
                'frequency_penalty',
                'presence_penalty',
                'top_p',
                'seed',
            },
            'Anthropic': {'top_p', 'top_k'},
            'Mistral': {'top_p', 'random_seed', 'safe_mode'},
            'Gemini': {'top_p', 'top_k'},
            'Debug': {'message'},
        }

        source: ModelSource = self.get_model_source()
        allowed = ALLOWED_PARAMS[source]
        invalid_params = set(self.provider_params.keys()) - allowed
        if invalid_params:
            raise ValueError(
                f"Invalid provider_params for {source}: "
                + f"{invalid_params}. Allowed: {allowed}"
            )
        return self


class Settings(BaseSettings):
    """
    A pydantic settings object containing the language model
    configuration. Settings are saved and read from the configuration
    file in TOML format.

    Attributes:
        major: language model used by default by pipelines
        minor: secondary language model, with more varied sampling
    """

    major: LanguageModelSettings = Field(
        default_factory=lambda: LanguageModelSettings(
            model="OpenAI/gpt-4o-mini",
        ),
        description="Primary language model",
    )
    minor: LanguageModelSettings = Field(
        default_factory=lambda: LanguageModelSettings(
            model="OpenAI/gpt-4o-mini", temperature=0.7
        ),
        description="Secondary language model for creative tasks",
    )

    model_config = SettingsConfigDict(
        toml_file=DEFAULT_CONFIG_FILE,
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        frozen=True,
        extra='ignore',
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the order of settings sources."""
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls),
            env_settings,
        )

    def __str__(self) -> str:
        return serialize_settings(self)


class TracingSettings(BaseSettings):
    """
    Trace emission settings, read from the environment.

    Tracing is active only when it is enabled and an API key for the
    collector is available; otherwise it is silently disabled.

    Attributes:
        enabled: LANGSMITH_TRACING or LANGCHAIN_TRACING_V2
        api_key: LANGSMITH_API_KEY or LANGCHAIN_API_KEY
        project: LANGSMITH_PROJECT or LANGCHAIN_PROJECT
        endpoint: LANGSMITH_ENDPOINT or LANGCHAIN_ENDPOINT
        queue_size: max number of trace events waiting for delivery
    """

    enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            'LANGSMITH_TRACING', 'LANGCHAIN_TRACING_V2'
        ),
    )
    api_key: SecretStr | None = Field(
        default=None,
        exclude=True,
        validation_alias=AliasChoices(
            'LANGSMITH_API_KEY', 'LANGCHAIN_API_KEY'
        ),
    )
    project: str = Field(
        default="default",
        min_length=1,
        validation_alias=AliasChoices(
            'LANGSMITH_PROJECT', 'LANGCHAIN_PROJECT'
        ),
    )
    endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            'LANGSMITH_ENDPOINT', 'LANGCHAIN_ENDPOINT'
        ),
    )
    queue_size: int = Field(default=1000, ge=1)

    # the prefix only applies to fields without an alias (queue_size)
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX + "TRACING_",
        frozen=True,
        extra='ignore',
        populate_by_name=True,
    )

    def is_active(self) -> bool:
        return self.enabled and self.api_key is not None and bool(
            self.api_key.get_secret_value()
        )


def check_credentials(settings: LanguageModelSettings) -> None:
    """Check that the credential of the generation service of the
    model is available in the environment.

    Raises:
        ConfigurationError: if the environment variable is missing
            or empty.
    """
    source = settings.get_model_source()
    env_var = PROVIDER_API_KEYS.get(source)
    if env_var is None:
        return
    if not os.environ.get(env_var):
        raise ConfigurationError(
            f"Missing credential for {source} models: set the "
            + f"{env_var} environment variable."
        )


def serialize_settings(sets: BaseSettings) -> str:
    """Transform the settings into a string in TOML format.

    Args:
        sets: The settings object to serialize

    Returns:
        TOML formatted string representation of settings
    """
    import tomlkit

    doc = tomlkit.document()
    doc.add(tomlkit.comment("Configuration file"))
    doc.add(tomlkit.nl())

    data: dict[str, Any] = sets.model_dump()
    for key, value in data.items():
        if isinstance(value, dict):
            tbl = tomlkit.table()
            for kkey, vvalue in value.items():  # type: ignore
                # None values can't be serialized to TOML
                if vvalue is not None:
                    tbl[kkey] = vvalue
            doc[key] = tbl
        elif value is not None:
            doc[key] = value

    return str(tomlkit.dumps(doc))  # type: ignore


def export_settings(
    settings: BaseSettings, file_path: str | Path | None = None
) -> None:
    """Save settings to file in TOML format.

    Args:
        settings: A settings object to save
        file_path: The settings file path (defaults to config.toml)

    Raises:
        OSError: If file cannot be written
    """
    file_path = Path(file_path or DEFAULT_CONFIG_FILE)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as f:
        f.write(serialize_settings(settings))


def create_default_config_file(
    file_path: str | Path | None = None,
) -> None:
    """Create a settings file with the default values, replacing any
    existing file.

    Args:
        file_path: Target file path (defaults to config.toml)
    """
    file_path = Path(file_path or DEFAULT_CONFIG_FILE)
    if file_path.exists():
        # otherwise, it will be read in
        file_path.unlink()

    export_settings(Settings(), file_path)


def load_settings(file_path: str | Path | None = None) -> Settings:
    """Load settings from TOML file.

    Args:
        file_path: Path to settings file (defaults to config.toml)

    Returns:
        Loaded settings object

    Raises:
        FileNotFoundError: If settings file doesn't exist
        ValueError: If settings file is invalid
    """
    file_path = Path(file_path or DEFAULT_CONFIG_FILE)
    if not file_path.exists():
        raise FileNotFoundError(f"Settings file not found: {file_path}")

    # A settings class reading from the specified file
    class FileSettings(Settings):
        model_config = SettingsConfigDict(
            toml_file=str(file_path),
            env_prefix=ENV_PREFIX,
            env_nested_delimiter="__",
            frozen=True,
            extra='ignore',
        )

    try:
        return FileSettings()
    except Exception as e:
        raise ValueError(
            f"Failed to load settings from {file_path}: {e}"
        ) from e
