"""
Prompt templates and the library of predefined prompts.

A template is a fixed skeleton with named `{slots}` that is rendered
with a mapping from slot name to value before the model is called.
There are two kinds of templates:

    - `StringTemplate` renders to a flat string.
    - `ChatTemplate` renders to a tuple of role-tagged messages. The
      slots are substituted independently within each message, and
      the order of the roles is preserved. A history slot splices a
      sequence of messages (for example, a `Conversation`) into the
      rendered prompt.

Rendering fails with `MissingVariableError` if the mapping has no
value for a slot. Rendering has no side effects: the same template
rendered twice with the same mapping gives equal prompts.

**Example**:

    ```python
    from lmpipe.language_models.prompts import ChatTemplate
    template = ChatTemplate([
        ("system", "You are a helpful assistant."),
        ("human", "{information}"),
    ])
    messages = template.render({'information': "X is a person."})
    ```

The predefined prompts,

    - "assistant"
    - "summary"
    - "translator"
    - "chat"

may be retrieved from the module-level dictionary `prompt_library`.
New prompts may be registered with the `create_prompt` function, and
are then available to `create_pipeline` under their name.

**Example**:

    ```python
    from lmpipe.language_models.prompts import (
        prompt_library,
        create_prompt,
    )
    create_prompt("Provide the questions the following text answers:"
        + "\\n\\nTEXT:\\n{text}", name="question_generator")
    template = prompt_library["question_generator"].to_template()
    ```

The templates are implemented with LangChain prompt templates, in
f-string format: literal braces are written as `{{` and `}}`.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Literal, TypeAlias

from pydantic import BaseModel, ConfigDict
from langchain_core.prompts import (
    BasePromptTemplate,
    ChatPromptTemplate,
    MessagesPlaceholder,
    PromptTemplate,
)

from lmpipe.errors import MissingVariableError
from lmpipe.utils.lazy_dict import LazyLoadingDict
from .messages import Conversation, Message
from .langchain.conversion import (
    from_langchain_message,
    to_langchain_messages,
)

RenderedPrompt: TypeAlias = str | tuple[Message, ...]
TemplateValue: TypeAlias = (
    str | int | float | Conversation | Sequence[Message]
)
ChatEntry: TypeAlias = tuple[str, str] | MessagesPlaceholder

# role names of chat template entries, to LangChain's
_ROLES: dict[str, str] = {
    'system': "system",
    'human': "human",
    'user': "human",
    'assistant': "ai",
    'ai': "ai",
}
_SLOT = re.compile(r"^\{\s*(\w+)\s*\}$")


class Template(ABC):
    """A prompt template with named slots."""

    name: str | None

    @property
    @abstractmethod
    def variables(self) -> frozenset[str]:
        """The names of all slots of the template."""
        pass

    @property
    def required_variables(self) -> frozenset[str]:
        """The names of the slots that must be given a value."""
        return self.variables

    @abstractmethod
    def to_langchain(self) -> BasePromptTemplate:
        """The underlying LangChain prompt template."""
        pass

    @abstractmethod
    def _format(self, values: dict[str, TemplateValue]) -> RenderedPrompt:
        pass

    def render(
        self, mapping: Mapping[str, TemplateValue] | None = None
    ) -> RenderedPrompt:
        """Substitute the slots of the template with the values of
        mapping. Keys of mapping that are not slots are ignored.

        Raises:
            MissingVariableError: if a slot has no value.
        """
        mapping = mapping or {}
        missing = self.required_variables - mapping.keys()
        if missing:
            raise MissingVariableError(frozenset(missing), self.name)
        return self._format(
            {k: mapping[k] for k in self.variables if k in mapping}
        )

    def __call__(
        self, mapping: Mapping[str, TemplateValue] | None = None
    ) -> RenderedPrompt:
        return self.render(mapping)


class StringTemplate(Template):
    """A template rendered into a flat string."""

    def __init__(self, text: str, name: str | None = None) -> None:
        self.text = text
        self.name = name
        self._prompt = PromptTemplate.from_template(text)

    @property
    def variables(self) -> frozenset[str]:
        return frozenset(self._prompt.input_variables)

    def to_langchain(self) -> PromptTemplate:
        return self._prompt

    def _format(self, values: dict[str, TemplateValue]) -> str:
        return self._prompt.format(
            **{k: _as_text(k, v) for k, v in values.items()}
        )

    def __repr__(self) -> str:
        return f"StringTemplate({self.text!r}, name={self.name!r})"


def history_slot(name: str, optional: bool = False) -> MessagesPlaceholder:
    """A chat template entry taking a sequence of messages."""
    return MessagesPlaceholder(variable_name=name, optional=optional)


class ChatTemplate(Template):
    """A template rendered into a tuple of messages.

    Args:
        entries: a sequence of (role, text) pairs. The role is one of
            'system', 'human' (or 'user') and 'assistant'. The pair
            ('placeholder', '{name}') and the entry given by
            `history_slot(name)` are history slots.
        name: an optional name, used in error messages and traces.
    """

    def __init__(
        self, entries: Sequence[ChatEntry], name: str | None = None
    ) -> None:
        self.entries = tuple(entries)
        self.name = name
        if not self.entries:
            raise ValueError("A chat template needs at least one entry")
        self._prompt = ChatPromptTemplate.from_messages(
            [_to_langchain_entry(e) for e in self.entries]
        )

    @property
    def variables(self) -> frozenset[str]:
        return frozenset(self._prompt.input_variables) | frozenset(
            self._prompt.optional_variables
        )

    @property
    def required_variables(self) -> frozenset[str]:
        return frozenset(self._prompt.input_variables)

    def to_langchain(self) -> ChatPromptTemplate:
        return self._prompt

    def _format(
        self, values: dict[str, TemplateValue]
    ) -> tuple[Message, ...]:
        slots = {
            m.variable_name
            for m in self._prompt.messages
            if isinstance(m, MessagesPlaceholder)
        }
        lc_values: dict[str, object] = {}
        for key, value in values.items():
            if key in slots:
                lc_values[key] = to_langchain_messages(
                    _as_messages(key, value)
                )
            else:
                lc_values[key] = _as_text(key, value)
        return tuple(
            from_langchain_message(m)
            for m in self._prompt.format_messages(**lc_values)
        )

    def __repr__(self) -> str:
        return f"ChatTemplate({list(self.entries)!r}, name={self.name!r})"


def _to_langchain_entry(
    entry: ChatEntry,
) -> tuple[str, str] | MessagesPlaceholder:
    if isinstance(entry, MessagesPlaceholder):
        return entry
    role, text = entry
    role = role.strip().lower()
    if role == 'placeholder':
        match = _SLOT.match(text.strip())
        if not match:
            raise ValueError(
                f"Invalid history slot '{text}': use '{{name}}'"
            )
        return history_slot(match.group(1))
    if role not in _ROLES:
        raise ValueError(f"Invalid role in chat template: '{role}'")
    return (_ROLES[role], text)


def _as_text(key: str, value: TemplateValue) -> str:
    match value:
        case str():
            return value
        case bool() | int() | float():
            return str(value)
        case _:
            raise TypeError(
                f"Template variable '{key}' must be text, got "
                + type(value).__name__
            )


def _as_messages(key: str, value: TemplateValue) -> tuple[Message, ...]:
    match value:
        case Conversation():
            return value.messages
        case str():
            raise TypeError(
                f"History slot '{key}' takes a sequence of messages"
            )
        case _ if isinstance(value, Sequence) and all(
            isinstance(m, Message) for m in value
        ):
            return tuple(value)  # type: ignore
        case _:
            raise TypeError(
                f"History slot '{key}' takes a sequence of messages"
            )


# ---------------------------------------------------------------------
# Prompt library


class PromptDefinition(BaseModel):
    """Groups all properties that uniquely define a prompt.

    Attributes:
        name: the name of the prompt in the library
        prompt: the text of the human message, or of the flat prompt
        system_prompt: an optional system message text
        history: if True, a 'history' slot is placed before the
            human message
    """

    name: str
    prompt: str
    system_prompt: str | None = None
    history: bool = False

    model_config = ConfigDict(frozen=True, extra='forbid')

    def to_template(self) -> Template:
        """A chat template when there is a system prompt or a history
        slot, a string template otherwise."""
        if self.system_prompt is None and not self.history:
            return StringTemplate(self.prompt, name=self.name)
        entries: list[ChatEntry] = []
        if self.system_prompt is not None:
            entries.append(('system', self.system_prompt))
        if self.history:
            entries.append(history_slot('history'))
        entries.append(('human', self.prompt))
        return ChatTemplate(entries, name=self.name)


# Define here the prompts supplied by the package.
PromptNames = Literal[
    "assistant",
    "summary",
    "translator",
    "chat",
]


# The factory function of the prompt library
def _create_prompt_definition(name: PromptNames) -> PromptDefinition:
    match name:
        case "assistant":  # --- prompt definition
            return PromptDefinition(
                name=name,
                system_prompt="You are a helpful assistant.",
                prompt="{information}",
            )
        case "summary":  # --- prompt definition
            return PromptDefinition(
                name=name,
                prompt="""
Given the information {information} about a person, I want you to
create:
1. A short summary
2. Two interesting facts about them
""",
            )
        case "translator":  # --- prompt definition
            return PromptDefinition(
                name=name,
                system_prompt="You are a professional translator. "
                + "Reply with the translation only.",
                prompt="Translate the following text into {language}:"
                + "\n\n{text}",
            )
        case "chat":  # --- prompt definition
            return PromptDefinition(
                name=name,
                system_prompt="You are a helpful assistant. Answer the "
                + "user, taking the conversation so far into account.",
                history=True,
                prompt="{input}",
            )
        case _:  # do not remove this
            raise ValueError(f"Invalid prompt name: {name}")


# a module-level typed dictionary for the predefined prompts
prompt_library: LazyLoadingDict[str, PromptDefinition] = LazyLoadingDict(
    _create_prompt_definition  # type: ignore
)


def create_prompt(
    prompt: str,
    name: str,
    *,
    system_prompt: str | None = None,
    history: bool = False,
    replace: bool = False,
) -> PromptDefinition:
    """
    Adds a custom prompt to the prompt library.

    Args:
        prompt: the prompt text.
        name: the name of the prompt in the library.
        system_prompt: an optional system prompt text.
        history: add a 'history' slot before the prompt.
        replace: replace a prompt already registered under name.

    Returns:
        the registered prompt definition.

    Raises:
        ValueError: if a prompt with the same name is already
            registered and replace is False.
    """
    definition = PromptDefinition(
        name=name,
        prompt=prompt,
        system_prompt=system_prompt,
        history=history,
    )
    # predefined prompts are created lazily, but are registered too
    registered = name in prompt_library or name in PromptNames.__args__
    if registered and not replace:
        raise ValueError(
            f"Prompt '{name}' already exists. Use replace=True to "
            "overwrite it."
        )
    if name in prompt_library:
        del prompt_library[name]
    prompt_library[name] = definition
    return definition


def get_template(name: str) -> Template:
    """The template of a prompt of the library.

    Raises:
        ValueError: if no prompt is registered under name.
    """
    return prompt_library[name].to_template()
