from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional

from pagefields.services.exceptions import ValidationError

META_PREFIX = "meta:"
META_TYPE = "meta"


@dataclass(frozen=True)
class FieldSpec:
    """One requested field after boundary normalization."""

    name: str
    selector: str = ""
    type: Optional[str] = None
    attribute: Optional[str] = None
    multiple: bool = False
    original_name: Optional[str] = None

    @property
    def result_key(self) -> str:
        """Key the caller sees in the merged response."""
        return self.original_name or self.name


@dataclass(frozen=True)
class ExtractedField:
    """Uniform per-field outcome of either extraction strategy."""

    selector: str
    value: Any = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def failed(self) -> bool:
        return not self.success

    @classmethod
    def ok(cls, selector: str, value: Any) -> ExtractedField:
        return cls(selector=selector, value=value)

    @classmethod
    def failure(cls, selector: str, error: str) -> ExtractedField:
        return cls(selector=selector, error=error)


def is_meta_field(field: FieldSpec) -> bool:
    if field.type == META_TYPE:
        return True
    return str(field.name).startswith(META_PREFIX)


def _as_meta_field(field: FieldSpec) -> FieldSpec:
    name = str(field.name)
    if name.startswith(META_PREFIX):
        return replace(field, name=name[len(META_PREFIX):], original_name=name)
    return field


def classify_fields(
    fields: Iterable[FieldSpec],
) -> tuple[list[FieldSpec], list[FieldSpec]]:
    """Stable partition of ``fields`` into ``(css_fields, meta_fields)``.

    Prefix-derived meta fields come back with ``meta:`` stripped from ``name``
    and the input name kept in ``original_name``. Pure function: no I/O.
    """
    css_fields: list[FieldSpec] = []
    meta_fields: list[FieldSpec] = []
    for field in fields:
        if is_meta_field(field):
            meta_fields.append(_as_meta_field(field))
        else:
            css_fields.append(field)
    return css_fields, meta_fields


def _field_from_mapping(name: Any, config: Mapping[str, Any]) -> FieldSpec:
    selector = config.get("selector")
    field_type = config.get("type")
    if selector is None and field_type != META_TYPE and not str(name).startswith(
        META_PREFIX
    ):
        raise ValidationError(
            f"Field '{name}' is missing a selector",
            context={"field": str(name)},
        )
    return FieldSpec(
        name=str(name),
        selector=str(selector) if selector is not None else "",
        type=str(field_type) if field_type is not None else None,
        attribute=config.get("attribute"),
        multiple=bool(config.get("multiple", False)),
    )


def normalize_fields(raw_fields: Any) -> list[FieldSpec]:
    """Turn the caller's ``fields`` parameter into ``FieldSpec`` objects.

    Accepts ``{name: selector}``, ``{name: {selector, type, ...}}``, or a list
    of ``{name, selector, type, ...}`` objects (bare strings in a list are used
    as both name and selector). This is the only place that looks at shapes.
    """
    if isinstance(raw_fields, Mapping):
        specs = []
        for name, config in raw_fields.items():
            if isinstance(config, Mapping):
                specs.append(_field_from_mapping(name, config))
            elif isinstance(config, str):
                specs.append(FieldSpec(name=str(name), selector=config))
            else:
                raise ValidationError(
                    f"Invalid definition for field '{name}'",
                    context={"field": str(name)},
                )
        return specs

    if isinstance(raw_fields, (list, tuple)):
        specs = []
        for index, entry in enumerate(raw_fields):
            if isinstance(entry, str):
                specs.append(FieldSpec(name=entry, selector=entry))
            elif isinstance(entry, Mapping):
                name = entry.get("name")
                if name is None or not str(name).strip():
                    name = entry.get("selector")
                if name is None or not str(name).strip():
                    raise ValidationError(
                        f"Field at position {index} has no name",
                        context={"index": index},
                    )
                specs.append(_field_from_mapping(name, entry))
            else:
                raise ValidationError(
                    f"Invalid field format: {type(entry).__name__}",
                    context={"index": index},
                )
        return specs

    raise ValidationError("Invalid fields format")


__all__ = [
    "FieldSpec",
    "ExtractedField",
    "classify_fields",
    "is_meta_field",
    "normalize_fields",
    "META_PREFIX",
]
