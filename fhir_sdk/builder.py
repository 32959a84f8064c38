"""Staged construction of immutable model values"""

import functools
from typing import Any

from fhir_sdk import errors
from fhir_sdk.model import coercion
from fhir_sdk.model.base import Element


class Builder:
    """
    Accumulates field values, then validates them all at once in build().

    Fields can be set by python name, wire name, or choice wire name:

        builder = Observation.builder()
        builder.set("status", "final")
        builder.value_quantity(Quantity(value=Decimal("5.4")))
        builder.code(concept)
        observation = builder.build()

    Each setter call checks and normalizes its value right away (raising BuildError for bad values).
    Setting a choice field replaces whatever variant it held before.
    """

    __slots__ = ("_cls", "_values")

    def __init__(self, cls: type[Element], values: dict[str, Any] | None = None):
        object.__setattr__(self, "_cls", cls)
        object.__setattr__(self, "_values", dict(values or {}))

    def __repr__(self) -> str:
        return f"Builder({self._cls.__name__}, {sorted(self._values)})"

    def set(self, name: str, value: Any) -> "Builder":
        """Sets one field (None unsets it). Returns the builder for chaining."""
        prop, choice_type = self._cls.resolve_field(name)
        stored = coercion.coerce_field(self._cls.revision, prop, value, choice_type=choice_type)
        if stored is None or stored == ():
            self._values.pop(prop.name, None)
        else:
            self._values[prop.name] = stored
        return self

    def unset(self, name: str) -> "Builder":
        prop, _ = self._cls.resolve_field(name)
        self._values.pop(prop.name, None)
        return self

    def add(self, name: str, *items: Any) -> "Builder":
        """Appends items to a list field"""
        prop, _ = self._cls.resolve_field(name)
        if not prop.is_list:
            raise errors.BuildError(f"{self._cls.__name__}.{prop.json_name} is not a list field")
        new_items = coercion.coerce_field(self._cls.revision, prop, items)
        if new_items:
            self._values[prop.name] = self._values.get(prop.name, ()) + new_items
        return self

    def build(self) -> Element:
        """Validates required fields (in declaration order) and returns the finished value"""
        values = dict(self._values)
        self._cls.validate_values(values)
        return self._cls._from_values(values)

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            self._cls.resolve_field(name)
        except errors.BuildError:
            raise AttributeError(f"{self._cls.__name__} has no field '{name}'") from None
        return functools.partial(self.set, name)

    def __setattr__(self, key, value):
        # builder.active = True would silently do nothing useful, so point at the setter instead
        raise AttributeError(f"Use builder.{key}(value) or builder.set({key!r}, value)")
