"""
lmpipe: a stateless language model pipeline.

    inputs -> render_prompt -> model_call -> extract_text -> caller

with optional tracing of every stage to an external collector.
"""

# pyright: reportUnusedImport=false
# flake8: noqa

from .errors import (
    PipelineError,
    ConfigurationError,
    MissingVariableError,
    TransportError,
)
from .pipeline import (
    Pipeline,
    ModelPipeline,
    build_pipeline,
    create_pipeline,
    compose,
)
