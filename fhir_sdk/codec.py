"""
Converts between FHIR JSON and model values.

Decoding is fail-fast: the first problem raises a DecodeError naming the offending path
(like Patient.name[0].given[1]). Unknown fields are skipped by default (and logged at debug
level), or rejected with strict=True.
"""

import decimal
import json
import logging
from collections.abc import Iterable
from typing import Any

from fhir_sdk import errors
from fhir_sdk.model import primitives, schema
from fhir_sdk.model.base import Choice, Element, Resource
from fhir_sdk.model.primitives import FhirDecimal, Primitive, PrimitiveKind
from fhir_sdk.revisions import Revision

###############################################################################
#
# Decoding
#
###############################################################################


class _Decoder:
    def __init__(self, revision: Revision, strict: bool, understood_modifiers: Iterable[str]):
        self.revision = revision
        self.strict = strict
        self.understood_modifiers = set(understood_modifiers)

    def resource(self, node: Any, path: str, target: type[Resource] | None = None) -> Resource:
        if not isinstance(node, dict):
            raise errors.TypeMismatch(path, f"expected JSON object, got {primitives.json_type_name(node)}")

        resource_type = node.get("resourceType")
        if resource_type is None:
            raise errors.MissingRequiredField(path, "resourceType")
        if not isinstance(resource_type, str):
            raise errors.TypeMismatch(f"{path}.resourceType" if path else "resourceType", "expected JSON string")

        cls = self.revision.find_resource_class(resource_type)
        if cls is None:
            raise errors.UnsupportedResourceType(
                path, f"'{resource_type}' is not a FHIR {self.revision.version.name} resource type"
            )
        if target is not None and cls is not target:
            raise errors.TypeMismatch(path, f"expected a {target.resource_type}, got a {resource_type}")

        return self.element(cls, node, path or resource_type)

    def element(self, cls: type[Element], node: Any, path: str) -> Element:
        if not isinstance(node, dict):
            raise errors.TypeMismatch(path, f"expected JSON object, got {primitives.json_type_name(node)}")

        # Keys at this level are checked before any child, so errors name the shallowest problem first
        for key in node:
            if not self._is_known_key(cls, key):
                self._unknown(f"{path}.{key}")

        values = {}
        for prop in cls.type_definition.properties:
            if prop.choice:
                stored = self._choice_field(cls, prop, node, path)
            elif prop.is_primitive:
                stored = self._primitive_field(prop, node, path)
            else:
                stored = self._complex_field(prop, node.get(prop.json_name), path)
            if stored is not None and stored != ():
                values[prop.name] = stored

        missing = cls.first_missing_field(values)
        if missing:
            raise errors.MissingRequiredField(path, missing)
        conflict = cls.field_conflict(values)
        if conflict:
            raise errors.InvalidChoiceVariant(path, conflict)

        self._check_modifiers(values.get("modifier_extension", ()), path)
        return cls._from_values(values)

    def _is_known_key(self, cls: type[Element], key: str) -> bool:
        if key == "resourceType":
            return issubclass(cls, Resource)

        extension_key = key.startswith("_")
        wire_name = key[1:] if extension_key else key
        prop = cls.type_definition.get(wire_name)
        if prop is not None:
            return prop.is_primitive or not extension_key

        for prop in cls.type_definition.properties:
            if prop.choice and self._is_choice_key(cls, prop.json_name, wire_name):
                allowed = self._choice_variants(prop)
                if wire_name not in allowed:
                    return True  # an unknown type suffix, which the choice decoding reports itself
                return not extension_key or schema.is_primitive_code(allowed[wire_name])
        return False

    def _unknown(self, path: str) -> None:
        if self.strict:
            raise errors.UnknownField(path, "unknown field")
        logging.debug("Ignoring unknown field %s", path)

    def _check_modifiers(self, modifiers: tuple, path: str) -> None:
        for index, extension in enumerate(modifiers):
            if extension.url in self.understood_modifiers:
                continue
            if self.strict:
                raise errors.UnknownField(
                    f"{path}.modifierExtension[{index}]", f"unrecognized modifier extension '{extension.url}'"
                )
            logging.warning("Unrecognized modifier extension '%s' at %s", extension.url, path)

    ###########################################################################
    # Complex fields
    ###########################################################################

    def _complex_field(self, prop: schema.FhirProperty, raw: Any, path: str) -> Any:
        field_path = f"{path}.{prop.json_name}"
        if raw is None:
            return None

        if prop.is_list:
            if not isinstance(raw, list):
                raise errors.TypeMismatch(field_path, f"expected JSON array, got {primitives.json_type_name(raw)}")
            items = []
            for index, item in enumerate(raw):
                item_path = f"{field_path}[{index}]"
                if item is None:
                    raise errors.TypeMismatch(item_path, "unexpected null in array")
                items.append(self._single(prop.type_code, item, item_path))
            return tuple(items)

        return self._single(prop.type_code, raw, field_path)

    def _single(self, type_code: str, raw: Any, path: str) -> Element:
        if type_code == schema.RESOURCE_TYPE:
            return self.resource(raw, path)
        return self.element(self.revision.get_class(type_code), raw, path)

    ###########################################################################
    # Choice fields
    ###########################################################################

    def _choice_variants(self, prop: schema.FhirProperty) -> dict[str, str]:
        """Maps each allowed wire name (like valueQuantity) to its type code"""
        return {Choice(code, None).json_key(prop.json_name): code for code in self.revision.choice_types(prop)}

    def _choice_field(self, cls: type[Element], prop: schema.FhirProperty, node: dict, path: str) -> Choice | None:
        prefix = prop.json_name
        allowed = self._choice_variants(prop)

        found = {}  # wire name -> type code
        for key in node:
            wire_name = key[1:] if key.startswith("_") else key
            if not self._is_choice_key(cls, prefix, wire_name):
                continue
            if wire_name not in allowed:
                raise errors.InvalidChoiceVariant(f"{path}.{key}", f"unknown type for {prop.label}")
            found[wire_name] = allowed[wire_name]

        if not found:
            return None
        if len(found) > 1:
            variants = ", ".join(sorted(found))
            raise errors.InvalidChoiceVariant(path, f"more than one variant for {prop.label}: {variants}")

        wire_name, type_code = found.popitem()
        field_path = f"{path}.{wire_name}"
        if schema.is_primitive_code(type_code):
            kind = PrimitiveKind(type_code)
            raw, extra = node.get(wire_name), node.get(f"_{wire_name}")
            element = self._primitive(kind, raw, extra, field_path, f"{path}._{wire_name}")
        else:
            raw = node.get(wire_name)
            if raw is None:
                return None
            element = self._single(type_code, raw, field_path)
        return Choice(type_code, element) if element is not None else None

    @staticmethod
    def _is_choice_key(cls: type[Element], prefix: str, wire_name: str) -> bool:
        return (
            len(wire_name) > len(prefix)
            and wire_name.startswith(prefix)
            and wire_name[len(prefix)].isupper()
            and cls.type_definition.get(wire_name) is None
        )

    ###########################################################################
    # Primitive fields
    ###########################################################################

    def _primitive_field(self, prop: schema.FhirProperty, node: dict, path: str) -> Any:
        name = prop.json_name
        raw = node.get(name)
        extra = node.get(f"_{name}")
        kind = PrimitiveKind(prop.type_code)
        field_path = f"{path}.{name}"
        extra_path = f"{path}._{name}"

        if not prop.is_list:
            return self._primitive(kind, raw, extra, field_path, extra_path)

        if raw is None and extra is None:
            return ()
        if raw is not None and not isinstance(raw, list):
            raise errors.TypeMismatch(field_path, f"expected JSON array, got {primitives.json_type_name(raw)}")
        if extra is not None and not isinstance(extra, list):
            raise errors.TypeMismatch(extra_path, f"expected JSON array, got {primitives.json_type_name(extra)}")
        if raw is not None and extra is not None and len(raw) != len(extra):
            raise errors.TypeMismatch(field_path, f"has {len(raw)} values but {len(extra)} extension entries")

        items = []
        for index in range(len(raw if raw is not None else extra)):
            value = raw[index] if raw is not None else None
            element = extra[index] if extra is not None else None
            item = self._primitive(kind, value, element, f"{field_path}[{index}]", f"{extra_path}[{index}]")
            if item is None:
                raise errors.TypeMismatch(f"{field_path}[{index}]", "unexpected null in array")
            items.append(item)
        return tuple(items)

    def _primitive(self, kind: PrimitiveKind, raw: Any, extra: Any, path: str, extra_path: str) -> Primitive | None:
        """Joins a primitive value with its `_field` sibling (either of which may be missing)"""
        if raw is None and extra is None:
            return None

        value = None
        if raw is not None:
            try:
                primitives.check_wire_type(kind, raw)
            except TypeError as exc:
                raise errors.TypeMismatch(path, str(exc)) from exc
            try:
                value = primitives.convert(kind, raw)
            except (TypeError, ValueError) as exc:
                raise errors.InvalidPrimitiveFormat(path, str(exc)) from exc

        element_id, extension = None, ()
        if extra is not None:
            element_id, extension = self._primitive_extras(extra, extra_path)
            if value is None and element_id is None and not extension:
                raise errors.TypeMismatch(extra_path, "has neither an id nor extensions")

        return Primitive(kind, value, element_id, extension)

    def _primitive_extras(self, extra: Any, path: str) -> tuple[str | None, tuple]:
        if not isinstance(extra, dict):
            raise errors.TypeMismatch(path, f"expected JSON object, got {primitives.json_type_name(extra)}")

        element_id = extra.get("id")
        if element_id is not None and not isinstance(element_id, str):
            type_name = primitives.json_type_name(element_id)
            raise errors.TypeMismatch(f"{path}.id", f"expected JSON string, got {type_name}")

        extension_prop = self.revision.get_class("Extension").type_definition.get("extension")
        extension = self._complex_field(extension_prop, extra.get("extension"), path) or ()

        for key in extra:
            if key not in {"id", "extension"}:
                self._unknown(f"{path}.{key}")
        return element_id, extension


def decode(
    data: Any,
    target: type[Element] | None = None,
    *,
    revision: Revision | None = None,
    strict: bool = False,
    understood_modifiers: Iterable[str] = (),
) -> Element:
    """
    Turns parsed FHIR JSON into a model value.

    :param data: parsed JSON (dicts, lists, and scalars)
    :param target: the expected class (a resource or data type class); if None, any resource is accepted
    :param revision: the revision to decode with (defaults to the target's revision)
    :param strict: reject unknown fields and unrecognized modifier extensions
    :param understood_modifiers: modifier extension URLs the caller knows how to handle
    """
    if target is Resource:
        target = None
    if target is not None:
        if revision is not None and target.revision is not revision:
            raise errors.UnsupportedVersionError(
                f"{target.__name__} belongs to FHIR {target.revision.version.name}, not {revision.version.name}"
            )
        revision = target.revision
    if revision is None:
        raise TypeError("decode() needs a target class or a revision")

    decoder = _Decoder(revision, strict, understood_modifiers)
    if target is None or issubclass(target, Resource):
        return decoder.resource(data, "", target)
    return decoder.element(target, data, target.__name__)


def loads(text: str | bytes, target: type[Element] | None = None, **kwargs) -> Element:
    """Parses FHIR JSON text (keeping decimal precision) and decodes it, see decode()"""
    try:
        data = json.loads(text, parse_float=FhirDecimal)
    except ValueError as exc:  # bad JSON or bytes that are not UTF-8
        raise errors.DecodeError("", f"invalid JSON: {exc}") from exc
    return decode(data, target, **kwargs)


###############################################################################
#
# Encoding
#
###############################################################################


def encode(value: Element) -> dict:
    """Turns a model value into FHIR JSON (dicts, lists, and scalars, with decimals as FhirDecimal)"""
    node = {}
    if isinstance(value, Resource):
        node["resourceType"] = value.resource_type

    for prop, stored in value.items():
        if prop.choice:
            key = stored.json_key(prop.json_name)
            if isinstance(stored.element, Primitive):
                _emit_primitive(node, key, stored.element)
            else:
                node[key] = encode(stored.element)
        elif prop.is_primitive:
            if prop.is_list:
                _emit_primitive_list(node, prop.json_name, stored)
            else:
                _emit_primitive(node, prop.json_name, stored)
        elif prop.is_list:
            node[prop.json_name] = [encode(item) for item in stored]
        else:
            node[prop.json_name] = encode(stored)

    return node


def _primitive_extras(primitive: Primitive) -> dict:
    extras = {}
    if primitive.id is not None:
        extras["id"] = primitive.id
    if primitive.extension:
        extras["extension"] = [encode(extension) for extension in primitive.extension]
    return extras


def _emit_primitive(node: dict, key: str, primitive: Primitive) -> None:
    if primitive.value is not None:
        node[key] = primitives.to_wire(primitive.kind, primitive.value)
    if primitive.has_extension:
        node[f"_{key}"] = _primitive_extras(primitive)


def _emit_primitive_list(node: dict, key: str, items: tuple[Primitive, ...]) -> None:
    if any(item.value is not None for item in items):
        node[key] = [primitives.to_wire(item.kind, item.value) if item.value is not None else None for item in items]
    if any(item.has_extension for item in items):
        node[f"_{key}"] = [_primitive_extras(item) if item.has_extension else None for item in items]


def dumps(value: Element | dict, *, indent: int | None = None) -> str:
    """
    Serializes a model value (or already-encoded JSON) to FHIR JSON text.

    Unlike json.dumps, decimals are written as bare numbers with their original digits.
    """
    node = encode(value) if isinstance(value, Element) else value
    return _write(node, indent, 0)


def _write(node: Any, indent: int | None, level: int) -> str:
    if isinstance(node, dict):
        if not node:
            return "{}"
        separator = ": " if indent is not None else ":"
        items = [
            json.dumps(key, ensure_ascii=False) + separator + _write(item, indent, level + 1)
            for key, item in node.items()
        ]
        return _join("{", items, "}", indent, level)
    if isinstance(node, (list, tuple)):
        if not node:
            return "[]"
        items = [_write(item, indent, level + 1) for item in node]
        return _join("[", items, "]", indent, level)
    if isinstance(node, decimal.Decimal):
        return str(node)  # FhirDecimal gives back its original digits
    return json.dumps(node, ensure_ascii=False)


def _join(open_char: str, items: list[str], close_char: str, indent: int | None, level: int) -> str:
    if indent is None:
        return open_char + ",".join(items) + close_char
    inner = "\n" + " " * (indent * (level + 1))
    outer = "\n" + " " * (indent * level)
    return open_char + inner + ("," + inner).join(items) + outer + close_char
