"""Invoice field definitions.

The catalogue names every field the pipeline extracts, its value type,
whether validation requires it, whether reviewer corrections teach the
vendor profile, and which zones usually hold it. Defaults can be extended
or overridden from ``configs/fields.yaml``.
"""

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from invoice_intake.errors import ConfigurationError
from invoice_intake.layout.zones import ZoneType
from invoice_intake.utils.config import load_yaml
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class FieldType(StrEnum):
    """Value type of a field; selects normalization and validation."""

    AMOUNT = "amount"
    DATE = "date"
    IDENTIFIER = "identifier"
    TEXT = "text"
    LINE_ITEMS = "line_items"


class FieldDefinition(BaseModel):
    """One extractable field."""

    name: str
    field_type: FieldType
    required: bool = False
    critical: bool = False
    learnable: bool = False
    zones: list[ZoneType] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)


DEFAULT_FIELDS: list[FieldDefinition] = [
    FieldDefinition(
        name="invoice_number",
        field_type=FieldType.IDENTIFIER,
        required=True,
        critical=True,
        zones=[ZoneType.HEADER_FIELDS],
    ),
    FieldDefinition(
        name="invoice_date",
        field_type=FieldType.DATE,
        required=True,
        critical=True,
        zones=[ZoneType.HEADER_FIELDS],
    ),
    FieldDefinition(name="due_date", field_type=FieldType.DATE, zones=[ZoneType.HEADER_FIELDS]),
    FieldDefinition(
        name="vendor_name",
        field_type=FieldType.TEXT,
        learnable=True,
        zones=[ZoneType.HEADER_FIELDS],
    ),
    FieldDefinition(
        name="po_number",
        field_type=FieldType.IDENTIFIER,
        learnable=True,
        zones=[ZoneType.HEADER_FIELDS],
    ),
    FieldDefinition(name="subtotal", field_type=FieldType.AMOUNT, zones=[ZoneType.TOTALS_BOX]),
    FieldDefinition(name="tax", field_type=FieldType.AMOUNT, zones=[ZoneType.TOTALS_BOX]),
    FieldDefinition(
        name="total",
        field_type=FieldType.AMOUNT,
        required=True,
        critical=True,
        zones=[ZoneType.TOTALS_BOX],
    ),
    FieldDefinition(
        name="line_items",
        field_type=FieldType.LINE_ITEMS,
        zones=[ZoneType.LINE_ITEMS_TABLE],
    ),
]


class FieldCatalog:
    """Ordered collection of field definitions.

    Args:
        definitions: Field definitions. Defaults to :data:`DEFAULT_FIELDS`.
    """

    def __init__(self, definitions: list[FieldDefinition] | None = None) -> None:
        self._fields = {d.name: d for d in (definitions or DEFAULT_FIELDS)}

    @classmethod
    def load(cls, path: Path | str) -> "FieldCatalog":
        """Load definitions from YAML, overriding defaults by name.

        The file holds a ``fields`` list of mappings with the
        :class:`FieldDefinition` keys.

        Raises:
            ConfigurationError: If an entry is invalid.
        """
        merged = {d.name: d for d in DEFAULT_FIELDS}
        raw = load_yaml(path)
        if raw:
            try:
                for entry in raw.get("fields", []):
                    definition = FieldDefinition(**entry)
                    merged[definition.name] = definition
            except (ValidationError, TypeError) as exc:
                raise ConfigurationError(f"Invalid field definition in {path}: {exc}") from exc
            logger.info("Loaded field definitions from %s", path)
        return cls(list(merged.values()))

    def __iter__(self):
        return iter(self._fields.values())

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def get(self, name: str) -> FieldDefinition:
        try:
            return self._fields[name]
        except KeyError:
            raise KeyError(f"Unknown field: {name}") from None

    @property
    def names(self) -> list[str]:
        return list(self._fields)

    @property
    def required(self) -> list[str]:
        return [d.name for d in self._fields.values() if d.required]

    @property
    def critical(self) -> list[str]:
        return [d.name for d in self._fields.values() if d.critical]

    @property
    def scalar(self) -> list[FieldDefinition]:
        return [d for d in self._fields.values() if d.field_type != FieldType.LINE_ITEMS]
