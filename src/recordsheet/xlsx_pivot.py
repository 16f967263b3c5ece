"""
Pivot format: classify record fields by pivot role and aggregate a flat
source sheet into a pivot sheet.

Roles are declared with ``typing.Annotated`` markers::

    class Sale(BaseModel):
        region: Annotated[str, PivotRow()]
        month: Annotated[str, PivotColumn(order=1)]
        amount: Annotated[float, PivotValue(order=1, aggregation=AggregationType.SUM)]
        note: Annotated[str, PivotDecoration(order=1)] = ""

or supplied as a role map ``{field name: marker}`` that overrides annotations.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import cache
from typing import Any, ClassVar

from openpyxl.worksheet.worksheet import Worksheet

from recordsheet import config
from recordsheet.xlsx_common import (
    NUMERIC_TYPES,
    CellKind,
    CellValue,
    FieldDescriptor,
    PivotValidationError,
    catalog,
)

logger = logging.getLogger(__name__)

# Rows prepended to a source sheet when the classification is embedded.
ROLE_ROW = 1
ORDER_ROW = 2
AGGREGATION_ROW = 3
ANNOTATION_ROWS = 3


class PivotRole(Enum):
    ROW = "row"
    COLUMN = "column"
    VALUE = "value"
    DECORATION = "deco"
    SKIP = "skip"


class AggregationType(Enum):
    SUM = "sum"
    COUNT = "count"
    AVERAGE = "average"
    MIN = "min"
    MAX = "max"


@dataclass(frozen=True)
class PivotRow:
    role: ClassVar[PivotRole] = PivotRole.ROW
    order: ClassVar[int] = 0


@dataclass(frozen=True)
class PivotColumn:
    role: ClassVar[PivotRole] = PivotRole.COLUMN
    order: int = 0


@dataclass(frozen=True)
class PivotValue:
    role: ClassVar[PivotRole] = PivotRole.VALUE
    order: int = 0
    aggregation: AggregationType = AggregationType.SUM


@dataclass(frozen=True)
class PivotDecoration:
    role: ClassVar[PivotRole] = PivotRole.DECORATION
    order: int = 0


PIVOT_MARKERS = (PivotRow, PivotColumn, PivotValue, PivotDecoration)
PivotMarker = PivotRow | PivotColumn | PivotValue | PivotDecoration


@dataclass(frozen=True)
class PivotFieldClassification:
    """Pivot role of one source column."""

    field_name: str
    header: str
    role: PivotRole
    order: int = 0
    aggregation: AggregationType | None = None
    # 1-based column of the field in the flat source sheet
    column_index: int = 1

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.order, self.column_index)


# Classification
class XLSXPivotClassifier:
    """Derives and validates the pivot classification of a record type."""

    @staticmethod
    def classify(
        model_class: type,
        fields: Sequence[FieldDescriptor] | None = None,
        roles: Mapping[str, PivotMarker] | None = None,
    ) -> tuple[PivotFieldClassification, ...]:
        fields = catalog(model_class) if fields is None else fields
        roles = roles or {}

        unknown = set(roles) - {f.identifier for f in fields}
        if unknown:
            msg = (
                f"Pivot roles given for fields not shown in tables of "
                f"{model_class.__name__}: {sorted(unknown)}"
            )
            raise PivotValidationError(msg)

        classifications = tuple(
            XLSXPivotClassifier.classify_field(
                field_descriptor, roles.get(field_descriptor.identifier), col_idx
            )
            for col_idx, field_descriptor in enumerate(fields, start=1)
        )
        validate_classification(classifications, model_class.__name__)
        return classifications

    @staticmethod
    def classify_field(
        field_descriptor: FieldDescriptor,
        explicit: PivotMarker | None,
        column_index: int,
    ) -> PivotFieldClassification:
        if explicit is not None:
            if not isinstance(explicit, PIVOT_MARKERS):
                msg = (
                    f"Invalid pivot role {explicit!r} "
                    f"for field '{field_descriptor.identifier}'."
                )
                raise PivotValidationError(msg)
            marker = explicit
        else:
            markers = [
                m for m in field_descriptor.annotations if isinstance(m, PIVOT_MARKERS)
            ]
            if len(markers) > 1:
                msg = (
                    f"Field '{field_descriptor.identifier}' "
                    "has more than one pivot role."
                )
                raise PivotValidationError(msg)
            marker = markers[0] if markers else None

        if marker is None:
            return PivotFieldClassification(
                field_descriptor.identifier,
                field_descriptor.name,
                PivotRole.SKIP,
                column_index=column_index,
            )

        aggregation = getattr(marker, "aggregation", None)
        if aggregation in (AggregationType.SUM, AggregationType.AVERAGE) and (
            field_descriptor.kind is not CellKind.NUMBER
        ):
            msg = (
                f"Value field '{field_descriptor.identifier}' must be numeric "
                f"for aggregation {aggregation.name}."
            )
            raise PivotValidationError(msg)

        return PivotFieldClassification(
            field_descriptor.identifier,
            field_descriptor.name,
            marker.role,
            marker.order,
            aggregation,
            column_index,
        )


def validate_classification(
    classifications: Sequence[PivotFieldClassification], type_name: str
) -> None:
    roles = [c.role for c in classifications]
    if roles.count(PivotRole.ROW) == 0:
        msg = f"No pivot row field found for {type_name}."
        raise PivotValidationError(msg)
    if roles.count(PivotRole.ROW) > 1:
        msg = f"Only one pivot row field allowed for {type_name}."
        raise PivotValidationError(msg)
    if PivotRole.COLUMN not in roles:
        msg = f"No pivot column field found for {type_name}."
        raise PivotValidationError(msg)
    if PivotRole.VALUE not in roles:
        msg = f"No pivot value field found for {type_name}."
        raise PivotValidationError(msg)


@cache
def classification(model_class: type) -> tuple[PivotFieldClassification, ...]:
    """Pivot classification from annotations, memoized per type."""
    return XLSXPivotClassifier.classify(model_class)


# Embedded classification rows
def annotate_source_sheet(
    worksheet: Worksheet, classifications: Sequence[PivotFieldClassification]
) -> None:
    """Shift the flat sheet down and write role, order and aggregation rows above it."""
    worksheet.insert_rows(1, amount=ANNOTATION_ROWS)
    for c in classifications:
        worksheet.cell(row=ROLE_ROW, column=c.column_index, value=c.role.value)
        worksheet.cell(row=ORDER_ROW, column=c.column_index, value=c.order)
        worksheet.cell(
            row=AGGREGATION_ROW,
            column=c.column_index,
            value=c.aggregation.value if c.aggregation else None,
        )


def strip_source_annotations(worksheet: Worksheet) -> None:
    """Remove the classification rows; the flat layout is restored."""
    worksheet.delete_rows(1, amount=ANNOTATION_ROWS)


def read_source_annotations(
    worksheet: Worksheet,
) -> tuple[PivotFieldClassification, ...]:
    header_row = ANNOTATION_ROWS + 1
    classifications = []
    for column_cells in worksheet.iter_cols(min_row=ROLE_ROW, max_row=header_row):
        role_cell, order_cell, aggregation_cell, header_cell = column_cells
        if role_cell.value is None:
            continue
        try:
            role = PivotRole(str(role_cell.value).strip())
            aggregation = (
                AggregationType(str(aggregation_cell.value).strip())
                if aggregation_cell.value
                else None
            )
            order = int(order_cell.value or 0)
        except ValueError as e:
            msg = (
                f"Invalid pivot annotation in column {role_cell.column} "
                f'of "{worksheet.title}": {e}'
            )
            raise PivotValidationError(msg) from e
        header = "" if header_cell.value is None else str(header_cell.value)
        classifications.append(
            PivotFieldClassification(
                header, header, role, order, aggregation, role_cell.column
            )
        )
    validate_classification(classifications, f'sheet "{worksheet.title}"')
    return tuple(classifications)


# Aggregation
class _Aggregate:
    """Running aggregate of one value field for one (row key, column key)."""

    def __init__(self, aggregation: AggregationType, field_name: str):
        self.aggregation = aggregation
        self.field_name = field_name
        self.count = 0
        self.total: Any = 0
        self.minimum: Any = None
        self.maximum: Any = None

    def add(self, value: Any) -> None:
        if value is None:
            return
        if self.aggregation in (AggregationType.SUM, AggregationType.AVERAGE):
            if isinstance(value, bool) or not isinstance(value, NUMERIC_TYPES):
                msg = (
                    f"Cannot aggregate non-numeric value '{value}' "
                    f"of field '{self.field_name}'."
                )
                raise PivotValidationError(msg)
            self.total += value
        elif self.aggregation in (AggregationType.MIN, AggregationType.MAX):
            try:
                if self.minimum is None or value < self.minimum:
                    self.minimum = value
                if self.maximum is None or value > self.maximum:
                    self.maximum = value
            except TypeError as e:
                msg = f"Cannot compare values of field '{self.field_name}': {e}"
                raise PivotValidationError(msg) from e
        self.count += 1

    def result(self) -> Any:
        if self.count == 0:
            return None
        if self.aggregation is AggregationType.SUM:
            return self.total
        if self.aggregation is AggregationType.COUNT:
            return self.count
        if self.aggregation is AggregationType.AVERAGE:
            return self.total / self.count
        if self.aggregation is AggregationType.MIN:
            return self.minimum
        return self.maximum


@dataclass
class PivotTable:
    """Aggregated pivot, axes in output order."""

    row_field: PivotFieldClassification
    column_fields: list[PivotFieldClassification]
    value_fields: list[PivotFieldClassification]
    row_keys: list[Any] = field(default_factory=list)
    column_keys: list[tuple] = field(default_factory=list)
    cells: dict[tuple, Any] = field(default_factory=dict)

    def value(self, row_key: Any, column_key: tuple, value_field: str) -> Any:
        """Finalized aggregate or None if no record contributed."""
        return self.cells.get((row_key, column_key, value_field))


def _source_value(row: tuple, c: PivotFieldClassification) -> Any:
    if c.column_index > len(row):
        return None
    value = row[c.column_index - 1]
    # blank text is the blank key
    return None if isinstance(value, str) and not value.strip() else value


class XLSXSheetPivoter:
    """Aggregates a flat source sheet into a pivot sheet.

    Row keys appear in first-seen order. Column key tuples appear in
    first-seen order; their components follow the declared order of the
    column fields. Each column key is crossed with the value fields in their
    declared order.
    """

    def __init__(self, settings: config.Settings | None = None):
        self.settings = settings or config.SETTINGS

    def pivot(
        self,
        source: Worksheet,
        destination: Worksheet,
        classifications: Sequence[PivotFieldClassification] | None = None,
    ) -> PivotTable:
        """Fill destination with the pivot of source.

        Without classifications they are read from the annotation rows on top
        of the source sheet.
        """
        if classifications is None:
            classifications = read_source_annotations(source)
            data_start_row = ANNOTATION_ROWS + 2
        else:
            validate_classification(classifications, f'sheet "{source.title}"')
            data_start_row = 2

        table = self.aggregate(source, classifications, data_start_row)
        self.write(destination, table)
        logger.debug(
            'Pivoted sheet "%s" into "%s": %i rows x %i columns.',
            source.title,
            destination.title,
            len(table.row_keys),
            len(table.column_keys) * len(table.value_fields),
        )
        return table

    @staticmethod
    def aggregate(
        source: Worksheet,
        classifications: Sequence[PivotFieldClassification],
        data_start_row: int = 2,
    ) -> PivotTable:
        row_field = next(c for c in classifications if c.role is PivotRole.ROW)
        column_fields = sorted(
            (c for c in classifications if c.role is PivotRole.COLUMN),
            key=lambda c: c.sort_key,
        )
        value_fields = sorted(
            (c for c in classifications if c.role is PivotRole.VALUE),
            key=lambda c: c.sort_key,
        )

        groups: dict[Any, dict[tuple, list[_Aggregate]]] = {}
        column_keys: dict[tuple, None] = {}
        for row in source.iter_rows(min_row=data_start_row, values_only=True):
            row_key = _source_value(row, row_field)
            column_key = tuple(_source_value(row, c) for c in column_fields)
            column_keys.setdefault(column_key)
            aggregates = groups.setdefault(row_key, {}).setdefault(
                column_key,
                [_Aggregate(c.aggregation, c.field_name) for c in value_fields],
            )
            for aggregate, value_field in zip(aggregates, value_fields):
                aggregate.add(_source_value(row, value_field))

        table = PivotTable(
            row_field,
            column_fields,
            value_fields,
            row_keys=list(groups),
            column_keys=list(column_keys),
        )
        for row_key, by_column in groups.items():
            for column_key, aggregates in by_column.items():
                for aggregate, value_field in zip(aggregates, value_fields):
                    result = aggregate.result()
                    if result is not None:
                        key = (row_key, column_key, value_field.field_name)
                        table.cells[key] = result
        return table

    def write(self, destination: Worksheet, table: PivotTable) -> None:
        """Write header rows (one per column field plus value names) and data rows."""
        date_format = self.settings.date_format
        value_header_row = len(table.column_fields) + 1
        width = len(table.value_fields)

        for r, column_field in enumerate(table.column_fields, start=1):
            CellValue.of(column_field.header).apply(destination.cell(row=r, column=1))
        CellValue.of(table.row_field.header).apply(
            destination.cell(row=value_header_row, column=1)
        )

        for k, column_key in enumerate(table.column_keys):
            for v, value_field in enumerate(table.value_fields):
                col_idx = 2 + k * width + v
                for r, key_part in enumerate(column_key, start=1):
                    CellValue.of(key_part).apply(
                        destination.cell(row=r, column=col_idx), date_format
                    )
                CellValue.of(value_field.header).apply(
                    destination.cell(row=value_header_row, column=col_idx)
                )

        for i, row_key in enumerate(table.row_keys, start=value_header_row + 1):
            CellValue.of(row_key).apply(destination.cell(row=i, column=1), date_format)
            for k, column_key in enumerate(table.column_keys):
                for v, value_field in enumerate(table.value_fields):
                    result = table.value(row_key, column_key, value_field.field_name)
                    cell = destination.cell(row=i, column=2 + k * width + v)
                    CellValue.of(result).apply(cell, date_format)

        if self.settings.freeze_header:
            destination.freeze_panes = f"B{value_header_row + 1}"
