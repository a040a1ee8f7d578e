# pyright: reportUnusedImport=false
# flake8: noqa

from .messages import (
    Role,
    Message,
    TokenUsage,
    Response,
    Conversation,
)
from .prompts import (
    RenderedPrompt,
    Template,
    StringTemplate,
    ChatTemplate,
    history_slot,
    PromptDefinition,
    prompt_library,
    create_prompt,
)
from .base import ModelInvoker
from .parsers import extract_text, TextExtractor
