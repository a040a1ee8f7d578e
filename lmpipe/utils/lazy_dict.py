"""
The utility class `LazyLoadingDict` stores objects produced on demand
by a factory function and memoizes them.

In lmpipe it backs two repositories: the prompt library, keyed by
prompt name, and the LangChain chat model repository, keyed by the
frozen `LanguageModelSettings` object that specifies the model. In
both cases the factory validates the key and raises ValueError for
invalid definitions.

Example:
    ```python
    from lmpipe.utils.lazy_dict import LazyLoadingDict

    def _make_greeting(name: str) -> str:
        if not name:
            raise ValueError("Empty name")
        return f"Hello, {name}"

    greetings = LazyLoadingDict(_make_greeting)
    greetings["Ada"]       # created by the factory
    greetings["Ada"]       # memoized
    ```
"""

from collections.abc import Callable
from typing import TypeVar

# ValueT is the parameter for the stored valued, KeyT for the keys.
ValueT = TypeVar('ValueT')
KeyT = TypeVar('KeyT')


class LazyLoadingDict(dict[KeyT, ValueT]):
    """A dictionary whose missing values are created by a factory
    function and then memoized.

    Values may also be assigned directly, bypassing the factory. An
    existing key cannot be overwritten: delete it first. Values that
    expose a `close` method are closed when they are removed from
    the dictionary, unless a destructor function is given.

    Expected behaviour: may raise ValidationError and ValueErrors
    from the factory function.
    """

    def __init__(
        self,
        key_creator_func: Callable[[KeyT], ValueT],
        destructor_func: Callable[[ValueT], None] | None = None,
    ):
        super().__init__()
        self._key_creator_func = key_creator_func
        self._destructor_func = destructor_func

    def _destroy_value(self, value: ValueT) -> None:
        if self._destructor_func:
            self._destructor_func(value)
        elif callable(getattr(value, "close", None)):
            value.close()  # type: ignore (checked)

    def __getitem__(self, key: KeyT) -> ValueT:
        if key in self:
            return super().__getitem__(key)

        value: ValueT = self._key_creator_func(key)
        super().__setitem__(key, value)
        return value

    def __setitem__(self, key: KeyT, value: ValueT) -> None:
        """Set a key/value pair directly, bypassing the factory.

        Raises:
            ValueError: If the key already exists in the dictionary.
        """
        if key in self:
            raise ValueError(
                f"Key '{key}' already exists. Delete it first to "
                "overwrite."
            )
        super().__setitem__(key, value)

    def __delitem__(self, key: KeyT) -> None:
        if key in self:
            self._destroy_value(super().__getitem__(key))
        super().__delitem__(key)

    def clear(self) -> None:
        for value in list(self.values()):
            self._destroy_value(value)
        super().clear()
