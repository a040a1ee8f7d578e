"""
Exceptions raised by the pipeline.

Errors of the primary pipeline (template rendering, model invocation)
always reach the caller. Errors of the trace channel never do: they
are logged by the trace worker and discarded.

    PipelineError
     +-- ConfigurationError   missing credential or setting
     +-- MissingVariableError unresolved template placeholder
     +-- TransportError       remote generation service failure
"""


class PipelineError(Exception):
    """Base class of the exceptions raised by lmpipe."""


class ConfigurationError(PipelineError):
    """A required credential or configuration value is missing."""


class MissingVariableError(PipelineError, KeyError):
    """One or more placeholders of a template have no value.

    Attributes:
        missing: the names of the unresolved placeholders.
        template_name: the name of the template, if any.
    """

    def __init__(
        self, missing: frozenset[str], template_name: str | None = None
    ) -> None:
        self.missing = frozenset(missing)
        self.template_name = template_name
        names = ", ".join(sorted(self.missing))
        where = f" in template '{template_name}'" if template_name else ""
        super().__init__(f"Missing template variables{where}: {names}")

    def __str__(self) -> str:
        # KeyError would quote the message otherwise
        return str(self.args[0])


class TransportError(PipelineError):
    """The remote generation service could not complete the request.

    Attributes:
        model: the model specification, as 'provider/model'.
    """

    def __init__(self, message: str, model: str | None = None) -> None:
        self.model = model
        super().__init__(message)
