"""
Common XLSX functionality shared by the table and the pivot formats.

This module contains shared infrastructure including:
- Exception classes
- Field metadata and the property catalog of record types
- Collaborator interfaces for identity resolution and record materialization
- The cell marshaller converting field values to/from worksheet cells
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import cache
from types import UnionType
from typing import Any, Protocol, Union, get_args, get_origin, runtime_checkable

from openpyxl.cell.cell import Cell
from openpyxl.comments import Comment
from openpyxl.utils.datetime import from_excel
from pydantic import BaseModel

from recordsheet import config

logger = logging.getLogger(__name__)

COMMENT_AUTHOR = "recordsheet"
COLLECTION_TYPES = (list, tuple, set, frozenset, dict)
NUMERIC_TYPES = (int, float, Decimal)
TRUE_STRINGS = ("true", "yes", "y", "1", "on")
FALSE_STRINGS = ("false", "no", "n", "0", "off")


# Exception classes
class RecordSheetError(Exception):
    """Base class of all errors raised by recordsheet."""


class NamingError(RecordSheetError, ValueError):
    """Raised when worksheet names are duplicated, too long or malformed."""


class CatalogError(RecordSheetError, TypeError):
    """Raised when a record type cannot be represented as a worksheet."""


class PivotValidationError(RecordSheetError, ValueError):
    """Raised when the pivot role declarations of a record type are invalid."""


class TypeMismatchError(RecordSheetError, ValueError):
    """Raised when a cell cannot be coerced to the declared type of a field."""

    def __init__(self, field_name: str, value: Any, reason: str):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(
            f"Cannot convert value '{value}' for field '{field_name}': {reason}"
        )


class UnresolvableReferenceError(RecordSheetError, LookupError):
    """Raised when an identity token does not resolve to a value."""

    def __init__(self, token: Any, reason: str = "token does not resolve"):
        self.token = token
        super().__init__(f"Cannot resolve reference '{token}': {reason}")


class SheetNotFoundError(RecordSheetError, LookupError):
    """Raised when none of the candidate sheet names exists in a workbook."""

    def __init__(self, candidates: list[str]):
        self.candidates = list(candidates)
        super().__init__(f"Could not locate sheet named any of: {self.candidates}")


class RowImportError(RecordSheetError):
    """Raised when a worksheet row cannot be imported; aborts the whole import."""

    def __init__(self, row_number: int, cause: Exception):
        self.row_number = row_number
        self.cause = cause
        super().__init__(f"Error processing row {row_number}: {cause}")


# Metadata and field analysis
@dataclass(frozen=True)
class XLSXMetadata:
    """XLSX-specific metadata for pydantic fields.

    Attach it with ``typing.Annotated``::

        class Order(BaseModel):
            internal_note: Annotated[str, XLSXMetadata(hidden=True)] = ""
            customer: Annotated[str, XLSXMetadata(reference=True)]
    """

    display_name: str | None = None
    hidden: bool = False
    reference: bool = False
    xlsx_serializer: Callable | None = None
    xlsx_deserializer: Callable | None = None


class CellKind(Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    REFERENCE = "reference"
    BLANK = "blank"


def unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    """Return the type inside ``X | None`` and whether it was optional."""
    if get_origin(field_type) in (Union, UnionType):
        args = get_args(field_type)
        non_none_args = [arg for arg in args if arg is not type(None)]
        is_optional = len(non_none_args) < len(args)
        if len(non_none_args) == 1:
            return non_none_args[0], is_optional
        return field_type, is_optional
    return field_type, False


def is_collection_type(field_type: Any) -> bool:
    if get_origin(field_type) in COLLECTION_TYPES:
        return True
    return isinstance(field_type, type) and issubclass(field_type, COLLECTION_TYPES)


def _semantic_kind(
    value_type: Any, xlsx_metadata: XLSXMetadata | None
) -> CellKind | None:
    if xlsx_metadata is not None and xlsx_metadata.reference:
        return CellKind.REFERENCE
    if not isinstance(value_type, type):
        return None
    # Enum before the basic types; str and int enums are subclasses of them.
    if issubclass(value_type, BaseModel):
        return CellKind.REFERENCE
    if issubclass(value_type, Enum):
        return CellKind.TEXT
    if issubclass(value_type, bool):
        return CellKind.BOOLEAN
    if issubclass(value_type, NUMERIC_TYPES):
        return CellKind.NUMBER
    if issubclass(value_type, date):
        return CellKind.DATE
    if issubclass(value_type, str):
        return CellKind.TEXT
    return None


@dataclass(frozen=True)
class FieldDescriptor:
    """One visible, serializable field of a record type."""

    name: str
    identifier: str
    field_type: Any
    value_type: Any
    is_optional: bool = False
    is_required: bool = False
    xlsx_metadata: XLSXMetadata | None = None
    annotations: tuple = field(default=(), compare=False)

    @property
    def kind(self) -> CellKind | None:
        """Semantic cell kind of the field, None if it has no fixed kind."""
        return _semantic_kind(self.value_type, self.xlsx_metadata)

    @property
    def enum_type(self) -> type[Enum] | None:
        if isinstance(self.value_type, type) and issubclass(self.value_type, Enum):
            return self.value_type
        return None

    @property
    def serializer(self) -> Callable | None:
        return self.xlsx_metadata.xlsx_serializer if self.xlsx_metadata else None

    @property
    def deserializer(self) -> Callable | None:
        return self.xlsx_metadata.xlsx_deserializer if self.xlsx_metadata else None

    @property
    def blank_value(self) -> Any:
        """Value of a blank cell: "" for required text fields, else None."""
        if (
            self.is_required
            and not self.is_optional
            and self.deserializer is None
            and self.kind is CellKind.TEXT
            and self.enum_type is None
            and isinstance(self.value_type, type)
            and issubclass(self.value_type, str)
        ):
            return ""
        return None

    def get(self, record: Any) -> Any:
        return getattr(record, self.identifier, None)

    def set(self, record: Any, value: Any) -> None:
        if isinstance(record, BaseModel):
            # Frozen models reject setattr; the template step validates.
            record.__dict__[self.identifier] = value
            record.__pydantic_fields_set__.add(self.identifier)
        else:
            setattr(record, self.identifier, value)


class XLSXFieldCatalog:
    """Builds the ordered list of visible fields of pydantic record types."""

    @staticmethod
    def analyze_model(model_class: type) -> tuple[FieldDescriptor, ...]:
        """Analyze all fields, keeping the visible ones in declaration order."""
        if not (isinstance(model_class, type) and issubclass(model_class, BaseModel)):
            msg = f"Expected pydantic BaseModel subclass, got {model_class!r}"
            raise CatalogError(msg)

        descriptors = []
        for field_name, field_info in model_class.model_fields.items():
            descriptor = XLSXFieldCatalog.analyze_field(field_name, field_info)
            if XLSXFieldCatalog.is_visible(descriptor, field_info):
                descriptors.append(descriptor)
            else:
                logger.debug(
                    'Field "%s" of %s is not visible in tables.',
                    field_name,
                    model_class.__name__,
                )

        if not descriptors:
            msg = f"Type {model_class.__name__} has no fields visible in tables."
            raise CatalogError(msg)
        return tuple(descriptors)

    @staticmethod
    def analyze_field(field_name: str, field_info: Any) -> FieldDescriptor:
        value_type, is_optional = unwrap_optional(field_info.annotation)
        xlsx_metadata = XLSXFieldCatalog.extract_xlsx_metadata(field_info)
        return FieldDescriptor(
            name=XLSXFieldCatalog.get_field_display_name(
                field_name, field_info, xlsx_metadata
            ),
            identifier=field_name,
            field_type=field_info.annotation,
            value_type=value_type,
            is_optional=is_optional,
            is_required=field_info.is_required(),
            xlsx_metadata=xlsx_metadata,
            annotations=tuple(field_info.metadata),
        )

    @staticmethod
    def extract_xlsx_metadata(field_info: Any) -> XLSXMetadata | None:
        for metadata_item in field_info.metadata:
            if isinstance(metadata_item, XLSXMetadata):
                return metadata_item
        return None

    @staticmethod
    def get_field_display_name(
        field_name: str, field_info: Any, xlsx_metadata: XLSXMetadata | None
    ) -> str:
        """Get display name for a field, with fallback to auto-generated title case."""
        if xlsx_metadata and xlsx_metadata.display_name:
            return xlsx_metadata.display_name
        if field_info.title:
            return field_info.title
        return " ".join(word.capitalize() for word in field_name.split("_"))

    @staticmethod
    def is_visible(descriptor: FieldDescriptor, field_info: Any) -> bool:
        if descriptor.xlsx_metadata and descriptor.xlsx_metadata.hidden:
            return False
        if field_info.exclude is True:
            return False
        # Collections are shown only when the field brings its own converters.
        return not (
            is_collection_type(descriptor.value_type)
            and not (descriptor.serializer and descriptor.deserializer)
        )


@cache
def catalog(model_class: type) -> tuple[FieldDescriptor, ...]:
    """Ordered visible fields of a record type, memoized per type."""
    descriptors = XLSXFieldCatalog.analyze_model(model_class)
    logger.debug(
        "Catalog for %s: %s",
        model_class.__name__,
        ", ".join(d.identifier for d in descriptors),
    )
    return descriptors


# Collaborators
@runtime_checkable
class IdentityResolver(Protocol):
    """Turns domain values into identity tokens and back."""

    def resolve(self, token: str) -> Any: ...

    def token_for(self, value: Any) -> str: ...


def _default_identity_key(value: Any) -> str:
    for attr in ("id", "identifier", "key"):
        key = getattr(value, attr, None)
        if key is not None:
            return str(key)
    return str(value)


class IdentityRegistry:
    """In-memory identity resolver.

    Tokens have the form ``<class name>:<key>``. Values are registered
    explicitly or implicitly when a token is handed out for them.
    """

    def __init__(self, key: Callable[[Any], str] | None = None):
        self._key = key or _default_identity_key
        self._by_token: dict[str, Any] = {}

    def register(self, *values: Any) -> None:
        for value in values:
            self._by_token[self._token(value)] = value

    def forget(self, value: Any) -> None:
        self._by_token.pop(self._token(value), None)

    def token_for(self, value: Any) -> str:
        token = self._token(value)
        self._by_token.setdefault(token, value)
        return token

    def resolve(self, token: str) -> Any:
        try:
            return self._by_token[token]
        except KeyError:
            raise UnresolvableReferenceError(token) from None

    def _token(self, value: Any) -> str:
        return f"{type(value).__name__}:{self._key(value)}"


@runtime_checkable
class RecordMaterializer(Protocol):
    """Creates record instances for imported rows."""

    def new_transient(self, model_class: type) -> Any: ...

    def requires_template(self, model_class: type) -> bool: ...

    def new_from_template(self, model_class: type, record: Any) -> Any: ...


class ModelMaterializer:
    """Builds unvalidated transient records and validates them as a template."""

    def new_transient(self, model_class: type[BaseModel]) -> BaseModel:
        return model_class.model_construct()

    def requires_template(self, model_class: type[BaseModel]) -> bool:
        return True

    def new_from_template(
        self, model_class: type[BaseModel], record: BaseModel
    ) -> BaseModel:
        # model_construct leaves unset required fields out of __dict__, so
        # validation reports them as missing. Keys are field names, not aliases.
        return model_class.model_validate(dict(record.__dict__), by_name=True)


class TransientMaterializer(ModelMaterializer):
    """Returns the populated transient records without a validation step."""

    def requires_template(self, model_class: type[BaseModel]) -> bool:
        return False


# Cell values
@dataclass(frozen=True)
class CellValue:
    """Typed content of one worksheet cell."""

    kind: CellKind
    value: Any = None
    token: str | None = None

    @property
    def is_blank(self) -> bool:
        return self.kind is CellKind.BLANK

    @classmethod
    def of(cls, raw_value: Any) -> "CellValue":
        """Infer the cell kind from a plain Python value."""
        if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
            return cls(CellKind.BLANK)
        if isinstance(raw_value, bool):
            return cls(CellKind.BOOLEAN, raw_value)
        if isinstance(raw_value, NUMERIC_TYPES):
            return cls(CellKind.NUMBER, raw_value)
        if isinstance(raw_value, datetime):
            return cls(CellKind.DATE, raw_value.date())
        if isinstance(raw_value, date):
            return cls(CellKind.DATE, raw_value)
        if isinstance(raw_value, time):
            return cls(CellKind.TEXT, raw_value.isoformat())
        return cls(CellKind.TEXT, str(raw_value))

    @classmethod
    def from_cell(cls, cell: Cell) -> "CellValue":
        """Read an openpyxl cell; a cell comment is taken as identity token."""
        cell_value = cls.of(cell.value)
        comment = getattr(cell, "comment", None)
        if comment is not None and comment.text and not cell_value.is_blank:
            return cls(cell_value.kind, cell_value.value, comment.text.strip())
        return cell_value

    def apply(self, cell: Cell, date_format: str | None = None) -> None:
        """Write this value (and its style or comment) onto an openpyxl cell."""
        if self.is_blank:
            cell.value = None
            return
        cell.value = self.value
        if cell.data_type == "f":
            # Text such as "=x" is data here, never a formula.
            cell.data_type = "s"
        if self.kind is CellKind.DATE:
            cell.number_format = date_format or config.SETTINGS.date_format
        if self.token is not None:
            cell.comment = Comment(self.token, COMMENT_AUTHOR)


# Cell marshalling
class XLSXCellMarshaller:
    """Converts between typed field values and worksheet cell values."""

    def __init__(
        self,
        resolver: IdentityResolver | None = None,
        date_format: str | None = None,
    ):
        self.resolver = resolver
        self.date_format = date_format or config.SETTINGS.date_format

    # field value -> cell
    def to_cell(self, value: Any, field_descriptor: FieldDescriptor) -> CellValue:
        if value is None:
            return CellValue(CellKind.BLANK)

        if field_descriptor.serializer is not None:
            try:
                return CellValue.of(field_descriptor.serializer(value))
            except Exception as e:
                raise TypeMismatchError(field_descriptor.name, value, str(e)) from e

        kind = field_descriptor.kind
        if kind is CellKind.REFERENCE:
            return self._reference_cell(value, field_descriptor)
        if isinstance(value, Enum):
            return CellValue(CellKind.TEXT, str(value.value))
        if kind is CellKind.TEXT:
            return CellValue.of(str(value))
        if kind is CellKind.BOOLEAN and not isinstance(value, bool):
            raise TypeMismatchError(field_descriptor.name, value, "expected a boolean")
        if kind is CellKind.NUMBER and (
            isinstance(value, bool) or not isinstance(value, NUMERIC_TYPES)
        ):
            raise TypeMismatchError(field_descriptor.name, value, "expected a number")
        if kind is CellKind.DATE and not isinstance(value, date):
            raise TypeMismatchError(field_descriptor.name, value, "expected a date")
        return CellValue.of(value)

    def write(self, cell: Cell, record: Any, field_descriptor: FieldDescriptor) -> None:
        """Marshal the field of a record onto a cell."""
        self.to_cell(field_descriptor.get(record), field_descriptor).apply(
            cell, self.date_format
        )

    def _reference_cell(
        self, value: Any, field_descriptor: FieldDescriptor
    ) -> CellValue:
        if self.resolver is None:
            raise UnresolvableReferenceError(
                value, f"no identity resolver for field '{field_descriptor.name}'"
            )
        token = self.resolver.token_for(value)
        return CellValue(CellKind.REFERENCE, str(value), token)

    # cell -> field value
    def from_cell(
        self, cell_value: CellValue, field_descriptor: FieldDescriptor
    ) -> Any:
        """Convert a cell to the declared type of the field.

        Blank cells give the blank value of the field (None or "").
        """
        if cell_value.is_blank:
            return field_descriptor.blank_value

        raw_value = cell_value.value
        if field_descriptor.deserializer is not None:
            try:
                return field_descriptor.deserializer(raw_value)
            except Exception as e:
                raise TypeMismatchError(field_descriptor.name, raw_value, str(e)) from e

        if field_descriptor.kind is CellKind.REFERENCE:
            return self._resolve(cell_value, field_descriptor)
        if field_descriptor.enum_type is not None:
            return self._to_enum(raw_value, field_descriptor)

        converters = {
            bool: self._to_bool,
            int: self._to_int,
            float: self._to_float,
            Decimal: self._to_decimal,
            datetime: self._to_datetime,
            date: self._to_date,
            str: self._to_str,
        }
        value_type = field_descriptor.value_type
        for target_type, converter in converters.items():
            if isinstance(value_type, type) and issubclass(value_type, target_type):
                try:
                    return converter(raw_value)
                except (TypeError, ValueError, ArithmeticError) as e:
                    raise TypeMismatchError(
                        field_descriptor.name, raw_value, str(e)
                    ) from e

        # No fixed semantic type (e.g. unions): leave coercion to the model.
        return raw_value

    def _resolve(self, cell_value: CellValue, field_descriptor: FieldDescriptor) -> Any:
        token = cell_value.token or str(cell_value.value).strip()
        if self.resolver is None:
            raise UnresolvableReferenceError(
                token, f"no identity resolver for field '{field_descriptor.name}'"
            )
        try:
            value = self.resolver.resolve(token)
        except UnresolvableReferenceError:
            raise
        except LookupError as e:
            raise UnresolvableReferenceError(token, str(e)) from e
        if value is None:
            raise UnresolvableReferenceError(token)
        return value

    @staticmethod
    def _to_enum(raw_value: Any, field_descriptor: FieldDescriptor) -> Enum:
        enum_type = field_descriptor.enum_type
        text = str(raw_value).strip()
        for member in enum_type:
            if member.value == raw_value or str(member.value) == text:
                return member
        if text in enum_type.__members__:
            return enum_type[text]
        raise TypeMismatchError(
            field_descriptor.name,
            raw_value,
            f"expected one of {[str(member.value) for member in enum_type]}",
        )

    @staticmethod
    def _to_bool(raw_value: Any) -> bool:
        if isinstance(raw_value, bool):
            return raw_value
        if isinstance(raw_value, NUMERIC_TYPES) and raw_value in (0, 1):
            return bool(raw_value)
        text = str(raw_value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        msg = "expected a boolean (true/false, yes/no, 1/0)"
        raise ValueError(msg)

    @staticmethod
    def _to_decimal(raw_value: Any) -> Decimal:
        if isinstance(raw_value, bool) or isinstance(raw_value, date):
            msg = "expected a number"
            raise TypeError(msg)
        try:
            return Decimal(str(raw_value).strip())
        except InvalidOperation:
            msg = "expected a number"
            raise ValueError(msg) from None

    @classmethod
    def _to_int(cls, raw_value: Any) -> int:
        if isinstance(raw_value, int) and not isinstance(raw_value, bool):
            return raw_value
        number = cls._to_decimal(raw_value)
        if number != number.to_integral_value():
            msg = "expected an integer"
            raise ValueError(msg)
        return int(number)

    @classmethod
    def _to_float(cls, raw_value: Any) -> float:
        if isinstance(raw_value, float):
            return raw_value
        return float(cls._to_decimal(raw_value))

    @staticmethod
    def _to_date(raw_value: Any) -> date:
        if isinstance(raw_value, datetime):
            return raw_value.date()
        if isinstance(raw_value, date):
            return raw_value
        if isinstance(raw_value, NUMERIC_TYPES) and not isinstance(raw_value, bool):
            # Excel serial date in a cell without date format
            return from_excel(raw_value).date()
        if isinstance(raw_value, str):
            text = raw_value.strip()
            try:
                return date.fromisoformat(text)
            except ValueError:
                return datetime.fromisoformat(text).date()
        msg = "expected a date"
        raise TypeError(msg)

    @classmethod
    def _to_datetime(cls, raw_value: Any) -> datetime:
        return datetime.combine(cls._to_date(raw_value), time())

    @staticmethod
    def _to_str(raw_value: Any) -> str:
        if isinstance(raw_value, float) and raw_value.is_integer():
            return str(int(raw_value))
        if isinstance(raw_value, date):
            return raw_value.isoformat()
        return str(raw_value)
