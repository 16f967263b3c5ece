"""
Table format implementation for multiple records with a header row.

This module contains the table-specific functionality:
- Sheet writer producing a header row and one row per record
- Sheet reader reconstructing records from a header-driven worksheet
"""

import logging
from collections.abc import Sequence
from typing import Any

from openpyxl.cell import MergedCell
from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from recordsheet import config
from recordsheet.xlsx_common import (
    CatalogError,
    CellValue,
    FieldDescriptor,
    ModelMaterializer,
    RecordMaterializer,
    RowImportError,
    SheetNotFoundError,
    XLSXCellMarshaller,
    catalog,
)

logger = logging.getLogger(__name__)

HEADER_ROW = 1
MIN_COLUMN_WIDTH = 10
MAX_COLUMN_WIDTH = 50


class XLSXSheetWriter:
    """Writes records as a flat table: header row, one row per record."""

    def __init__(
        self,
        marshaller: XLSXCellMarshaller | None = None,
        settings: config.Settings | None = None,
    ):
        self.marshaller = marshaller or XLSXCellMarshaller()
        self.settings = settings or config.SETTINGS

    def write(
        self, worksheet: Worksheet, records: Sequence[Any], model_class: type
    ) -> None:
        """Fill the worksheet in place with a header row and the data rows."""
        fields = catalog(model_class)

        for col_idx, field_descriptor in enumerate(fields, start=1):
            header_cell = worksheet.cell(row=HEADER_ROW, column=col_idx)
            CellValue.of(field_descriptor.name).apply(header_cell)

        for row_idx, record in enumerate(records, start=HEADER_ROW + 1):
            if not isinstance(record, model_class):
                msg = (
                    f"Record of type {type(record).__name__} cannot be written "
                    f'to sheet "{worksheet.title}" of {model_class.__name__} records.'
                )
                raise CatalogError(msg)
            for col_idx, field_descriptor in enumerate(fields, start=1):
                self.marshaller.write(
                    worksheet.cell(row=row_idx, column=col_idx),
                    record,
                    field_descriptor,
                )

        if self.settings.freeze_header:
            worksheet.freeze_panes = f"A{HEADER_ROW + 1}"
        if self.settings.auto_adjust_columns:
            self._auto_adjust_columns(worksheet, len(fields))

        logger.debug(
            'Wrote %i %s records to sheet "%s".',
            len(records),
            model_class.__name__,
            worksheet.title,
        )

    @staticmethod
    def _auto_adjust_columns(worksheet: Worksheet, num_columns: int) -> None:
        """Auto-adjust column widths based on content."""
        for col_idx in range(1, num_columns + 1):
            max_length = 0
            column_letter = get_column_letter(col_idx)

            for row in worksheet.iter_rows(min_col=col_idx, max_col=col_idx):
                for cell in row:
                    if not isinstance(cell, MergedCell) and cell.value is not None:
                        max_length = max(max_length, len(str(cell.value)))

            adjusted_width = min(
                max(max_length + 2, MIN_COLUMN_WIDTH), MAX_COLUMN_WIDTH
            )
            worksheet.column_dimensions[column_letter].width = adjusted_width


class XLSXSheetReader:
    """Reconstructs records from a worksheet with a header row.

    Columns are bound by header text, so their order does not matter, unknown
    columns are ignored and missing columns leave fields unset. Rows without
    any value in a bound column are skipped.

    The first row that fails aborts the import with a RowImportError; no
    partial result is returned.
    """

    def __init__(
        self,
        marshaller: XLSXCellMarshaller | None = None,
        materializer: RecordMaterializer | None = None,
        settings: config.Settings | None = None,
    ):
        self.marshaller = marshaller or XLSXCellMarshaller()
        self.materializer = materializer or ModelMaterializer()
        self.settings = settings or config.SETTINGS

    def candidate_sheet_names(
        self, model_class: type, sheet_name: str | None = None
    ) -> list[str]:
        """Requested name first, then the class name without a conventional suffix."""
        names = []
        if sheet_name:
            names.append(sheet_name)

        derived = model_class.__name__
        for suffix in self.settings.sheet_name_suffixes:
            if derived.endswith(suffix) and len(derived) > len(suffix):
                derived = derived[: -len(suffix)]
                break
        if derived not in names:
            names.append(derived)
        return names

    def lookup_sheet(
        self, workbook: Workbook, model_class: type, sheet_name: str | None = None
    ) -> Worksheet:
        candidates = self.candidate_sheet_names(model_class, sheet_name)
        for name in candidates:
            if name in workbook.sheetnames:
                return workbook[name]
        raise SheetNotFoundError(candidates)

    def read(
        self, workbook: Workbook, model_class: type, sheet_name: str | None = None
    ) -> list[Any]:
        """Import all records of model_class from the matching worksheet."""
        fields = catalog(model_class)
        worksheet = self.lookup_sheet(workbook, model_class, sheet_name)
        bindings = self.read_headers(worksheet, fields)

        records = []
        for row_number, row in enumerate(
            worksheet.iter_rows(min_row=HEADER_ROW + 1), start=HEADER_ROW + 1
        ):
            try:
                record = self._read_row(row, bindings, model_class)
            except Exception as e:
                raise RowImportError(row_number, e) from e
            if record is None:
                logger.debug(
                    'Skipping blank row %i in sheet "%s".', row_number, worksheet.title
                )
                continue
            records.append(record)

        logger.debug(
            'Read %i %s records from sheet "%s".',
            len(records),
            model_class.__name__,
            worksheet.title,
        )
        return records

    def read_headers(
        self, worksheet: Worksheet, fields: Sequence[FieldDescriptor]
    ) -> dict[int, FieldDescriptor]:
        """Map column indices (1-based) of the header row to fields."""
        bindings: dict[int, FieldDescriptor] = {}
        header_cells = next(
            worksheet.iter_rows(min_row=HEADER_ROW, max_row=HEADER_ROW), ()
        )
        for cell in header_cells:
            if cell.value is None or not str(cell.value).strip():
                continue
            header = str(cell.value)
            field_descriptor = self._match_header(header, fields)
            if field_descriptor is None:
                logger.debug(
                    'Ignoring column "%s" in sheet "%s".', header, worksheet.title
                )
            elif field_descriptor in bindings.values():
                logger.debug(
                    'Ignoring repeated column "%s" in sheet "%s".',
                    header,
                    worksheet.title,
                )
            else:
                bindings[cell.column] = field_descriptor
        return bindings

    @staticmethod
    def _match_header(
        header: str, fields: Sequence[FieldDescriptor]
    ) -> FieldDescriptor | None:
        text = header.strip().casefold()
        for field_descriptor in fields:
            if text == field_descriptor.name.casefold():
                return field_descriptor
        for field_descriptor in fields:
            if text == field_descriptor.identifier.casefold():
                return field_descriptor
        return None

    def _read_row(
        self,
        row: tuple,
        bindings: dict[int, FieldDescriptor],
        model_class: type,
    ) -> Any:
        cells = [
            (field_descriptor, CellValue.from_cell(row[column_idx - 1]))
            for column_idx, field_descriptor in bindings.items()
            if column_idx <= len(row)
        ]
        if all(cell_value.is_blank for _, cell_value in cells):
            return None

        record = self.materializer.new_transient(model_class)
        for field_descriptor, cell_value in cells:
            value = self.marshaller.from_cell(cell_value, field_descriptor)
            if value is not None:
                field_descriptor.set(record, value)

        if self.materializer.requires_template(model_class):
            return self.materializer.new_from_template(model_class, record)
        return record
