"""
Public API for building workbooks from records and importing them back.

This module provides:
- Worksheet specs and contents, the unit of work for one worksheet
- The workbook builder for flat and pivoted workbooks
- Export functions writing a workbook to an .xlsx file
- Import functions reading typed records from .xlsx bytes
"""

import logging
import os
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

from openpyxl import load_workbook
from openpyxl.workbook import Workbook
from openpyxl.workbook.child import INVALID_TITLE_REGEX

from recordsheet import config
from recordsheet.config import MAX_SHEETNAME_LENGTH
from recordsheet.xlsx_common import (
    IdentityResolver,
    NamingError,
    RecordMaterializer,
    RecordSheetError,
    XLSXCellMarshaller,
    catalog,
)
from recordsheet.xlsx_pivot import (
    PivotFieldClassification,
    PivotMarker,
    XLSXPivotClassifier,
    XLSXSheetPivoter,
    annotate_source_sheet,
    classification,
    strip_source_annotations,
)
from recordsheet.xlsx_table import XLSXSheetReader, XLSXSheetWriter

logger = logging.getLogger(__name__)

XLSX_SUFFIX = ".xlsx"


@dataclass(frozen=True)
class WorksheetSpec:
    """Record type and target sheet of a batch of records."""

    record_type: type
    sheet_name: str


@dataclass(frozen=True)
class WorksheetContent:
    spec: WorksheetSpec
    records: Sequence[Any] = ()


class XLSXWorkbookBuilder:
    """Builds one workbook from several worksheet contents.

    All names, catalogs and pivot classifications are validated before the
    first sheet is created.
    """

    def __init__(
        self,
        resolver: IdentityResolver | None = None,
        settings: config.Settings | None = None,
        pivot_roles: Mapping[type, Mapping[str, PivotMarker]] | None = None,
    ):
        self.settings = settings or config.SETTINGS
        marshaller = XLSXCellMarshaller(resolver, self.settings.date_format)
        self.writer = XLSXSheetWriter(marshaller, self.settings)
        self.pivoter = XLSXSheetPivoter(self.settings)
        self.pivot_roles = pivot_roles or {}

    def source_sheet_name(self, sheet_name: str) -> str:
        return (self.settings.source_sheet_prefix + sheet_name)[:MAX_SHEETNAME_LENGTH]

    def validate_names(
        self, contents: Sequence[WorksheetContent], pivoted: bool = False
    ) -> None:
        if not contents:
            msg = "No worksheet contents provided for export."
            raise RecordSheetError(msg)

        names = [content.spec.sheet_name for content in contents]
        for name in names:
            if not name or not name.strip():
                msg = "Sheet names must not be empty."
                raise NamingError(msg)
            if len(name) > MAX_SHEETNAME_LENGTH:
                msg = (
                    f"Sheet name cannot exceed {MAX_SHEETNAME_LENGTH} characters "
                    f"(invalid name: '{name}')."
                )
                raise NamingError(msg)
            if INVALID_TITLE_REGEX.search(name):
                msg = (
                    "Sheet name contains an invalid character "
                    f"(invalid name: '{name}')."
                )
                raise NamingError(msg)
        if len(set(names)) < len(names):
            msg = "Sheet names must have distinct names."
            raise NamingError(msg)

        if pivoted:
            source_names = [self.source_sheet_name(name) for name in names]
            if len(set(names) | set(source_names)) < 2 * len(names):
                msg = (
                    "Source sheet names of pivot sheets collide with other sheet "
                    f"names: {source_names}"
                )
                raise NamingError(msg)

    def build_flat(self, contents: Sequence[WorksheetContent]) -> Workbook:
        """One flat sheet per worksheet content."""
        self.validate_names(contents)
        for content in contents:
            catalog(content.spec.record_type)

        workbook = self._new_workbook()
        for content in contents:
            worksheet = workbook.create_sheet(title=content.spec.sheet_name)
            self.writer.write(worksheet, content.records, content.spec.record_type)
        return workbook

    def build_pivoted(self, contents: Sequence[WorksheetContent]) -> Workbook:
        """One pivot sheet and one (hidden) flat source sheet per content."""
        self.validate_names(contents, pivoted=True)
        classifications = [
            self.classify(content.spec.record_type) for content in contents
        ]

        workbook = self._new_workbook()
        for content, classes in zip(contents, classifications):
            spec = content.spec
            pivot_sheet = workbook.create_sheet(title=spec.sheet_name)
            source_sheet = workbook.create_sheet(
                title=self.source_sheet_name(spec.sheet_name)
            )
            self.writer.write(source_sheet, content.records, spec.record_type)
            if self.settings.hide_source_sheets:
                source_sheet.sheet_state = "hidden"

            if self.settings.embed_pivot_classification:
                annotate_source_sheet(source_sheet, classes)
                self.pivoter.pivot(source_sheet, pivot_sheet)
                strip_source_annotations(source_sheet)
            else:
                self.pivoter.pivot(source_sheet, pivot_sheet, classes)
        return workbook

    def classify(self, record_type: type) -> tuple[PivotFieldClassification, ...]:
        roles = self.pivot_roles.get(record_type)
        if roles:
            return XLSXPivotClassifier.classify(
                record_type, catalog(record_type), roles
            )
        return classification(record_type)

    @staticmethod
    def _new_workbook() -> Workbook:
        workbook = Workbook()
        if "Sheet" in workbook.sheetnames:
            workbook.remove(workbook["Sheet"])
        return workbook


def save_workbook(workbook: Workbook, filepath: Path | str | None = None) -> Path:
    """Save to filepath or a new temporary .xlsx file.

    The workbook is first written to a temporary file that is deleted if
    saving fails, so no partial output is left behind.
    """
    if isinstance(filepath, str):
        filepath = Path(filepath)
    directory = filepath.parent if filepath is not None else None

    fd, tmp_name = tempfile.mkstemp(
        prefix="recordsheet-", suffix=XLSX_SUFFIX, dir=directory
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    if filepath is None:
        return tmp_path
    tmp_path.replace(filepath)
    return filepath


def workbook_to_bytes(workbook: Workbook) -> bytes:
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def export_flat(
    contents: Sequence[WorksheetContent],
    filepath: Path | str | None = None,
    resolver: IdentityResolver | None = None,
) -> Path:
    """Export each worksheet content as a flat sheet; returns the file path."""
    workbook = XLSXWorkbookBuilder(resolver).build_flat(contents)
    path = save_workbook(workbook, filepath)
    logger.info("Exported %i sheet(s) to %s", len(contents), path)
    return path


def export_pivoted(
    contents: Sequence[WorksheetContent],
    filepath: Path | str | None = None,
    resolver: IdentityResolver | None = None,
    pivot_roles: Mapping[type, Mapping[str, PivotMarker]] | None = None,
) -> Path:
    """Export each worksheet content as a pivot sheet; returns the file path."""
    builder = XLSXWorkbookBuilder(resolver, pivot_roles=pivot_roles)
    workbook = builder.build_pivoted(contents)
    path = save_workbook(workbook, filepath)
    logger.info("Exported %i pivot sheet(s) to %s", len(contents), path)
    return path


def _reader(
    resolver: IdentityResolver | None, materializer: RecordMaterializer | None
) -> XLSXSheetReader:
    return XLSXSheetReader(XLSXCellMarshaller(resolver), materializer)


def import_typed(
    model_class: type,
    sheet_name: str | None,
    data: bytes,
    resolver: IdentityResolver | None = None,
    materializer: RecordMaterializer | None = None,
) -> list[Any]:
    """Import records of one type from xlsx bytes."""
    workbook = load_workbook(BytesIO(data), data_only=True)
    records = _reader(resolver, materializer).read(workbook, model_class, sheet_name)
    logger.info("Imported %i %s record(s).", len(records), model_class.__name__)
    return records


def import_typed_file(
    filepath: Path | str,
    model_class: type,
    sheet_name: str | None = None,
    resolver: IdentityResolver | None = None,
    materializer: RecordMaterializer | None = None,
) -> list[Any]:
    """Import records of one type from an xlsx file."""
    return import_typed(
        model_class, sheet_name, Path(filepath).read_bytes(), resolver, materializer
    )


def import_multiple(
    specs: Sequence[WorksheetSpec],
    data: bytes,
    resolver: IdentityResolver | None = None,
    materializer: RecordMaterializer | None = None,
) -> list[list[Any]]:
    """Import one record list per spec, in order; the first failure aborts."""
    workbook = load_workbook(BytesIO(data), data_only=True)
    reader = _reader(resolver, materializer)
    results = [
        reader.read(workbook, spec.record_type, spec.sheet_name) for spec in specs
    ]
    logger.info(
        "Imported %s record(s) from %i sheet(s).",
        "+".join(str(len(records)) for records in results),
        len(specs),
    )
    return results
