"""
Tests for the xlsx_pivot module.

This module tests the pivot field classification and the sheet pivoter in both
the in-memory and the embedded classification mode.
"""

from typing import Annotated

import pytest
from openpyxl import Workbook
from pydantic import BaseModel

from recordsheet.xlsx_common import PivotValidationError, XLSXMetadata, catalog
from recordsheet.xlsx_pivot import (
    AggregationType,
    PivotColumn,
    PivotFieldClassification,
    PivotRole,
    PivotRow,
    PivotValue,
    XLSXPivotClassifier,
    XLSXSheetPivoter,
    annotate_source_sheet,
    classification,
    read_source_annotations,
    strip_source_annotations,
)
from recordsheet.xlsx_table import XLSXSheetWriter

from .conftest import Sale, Shipment


class NoRow(BaseModel):
    month: Annotated[str, PivotColumn()]
    amount: Annotated[float, PivotValue()]


class TwoRows(BaseModel):
    region: Annotated[str, PivotRow()]
    country: Annotated[str, PivotRow()]
    month: Annotated[str, PivotColumn()]
    amount: Annotated[float, PivotValue()]


class NoColumn(BaseModel):
    region: Annotated[str, PivotRow()]
    amount: Annotated[float, PivotValue()]


class NoValue(BaseModel):
    region: Annotated[str, PivotRow()]
    month: Annotated[str, PivotColumn()]
    comment: str = ""


class TextSum(BaseModel):
    region: Annotated[str, PivotRow()]
    month: Annotated[str, PivotColumn()]
    label: Annotated[str, PivotValue()]


class DoubleMarker(BaseModel):
    region: Annotated[str, PivotRow(), PivotColumn()]
    amount: Annotated[float, PivotValue()]


class FormulaHeaders(BaseModel):
    region: Annotated[str, PivotRow(), XLSXMetadata(display_name="=Region")]
    month: Annotated[str, PivotColumn(), XLSXMetadata(display_name="=Month")]
    amount: Annotated[float, PivotValue(), XLSXMetadata(display_name="=Amount")]


def source_sheet(records, model_class):
    wb = Workbook()
    source = wb.active
    source.title = "source"
    XLSXSheetWriter().write(source, records, model_class)
    return wb, source


def sheet_values(ws):
    return [list(row) for row in ws.iter_rows(values_only=True)]


class TestClassifier:
    def test_classification_from_annotations(self):
        classes = {c.field_name: c for c in classification(Sale)}
        assert classes["region"].role is PivotRole.ROW
        assert classes["month"].role is PivotRole.COLUMN
        assert classes["amount"].role is PivotRole.VALUE
        assert classes["amount"].aggregation is AggregationType.SUM
        assert classes["note"].role is PivotRole.DECORATION
        assert [c.column_index for c in classification(Sale)] == [1, 2, 3, 4]
        assert classes["month"].header == "Month"

    def test_classification_is_memoized(self):
        assert classification(Sale) is classification(Sale)

    def test_field_without_marker_is_skipped(self):
        comment = catalog(NoValue)[2]
        classified = XLSXPivotClassifier.classify_field(comment, None, 3)
        assert classified.role is PivotRole.SKIP
        assert classified.column_index == 3

    @pytest.mark.parametrize(
        ("model_class", "message"),
        [
            (NoRow, "No pivot row field"),
            (TwoRows, "Only one pivot row field"),
            (NoColumn, "No pivot column field"),
            (NoValue, "No pivot value field"),
            (TextSum, "must be numeric"),
            (DoubleMarker, "more than one pivot role"),
        ],
    )
    def test_invalid_classification(self, model_class, message):
        with pytest.raises(PivotValidationError, match=message):
            XLSXPivotClassifier.classify(model_class)

    def test_role_map_overrides_annotations(self):
        classes = XLSXPivotClassifier.classify(
            Sale,
            roles={
                "note": PivotColumn(order=2),
                "amount": PivotValue(aggregation=AggregationType.AVERAGE),
            },
        )
        by_name = {c.field_name: c for c in classes}
        assert by_name["note"].role is PivotRole.COLUMN
        assert by_name["note"].order == 2
        assert by_name["amount"].aggregation is AggregationType.AVERAGE

    def test_role_map_for_unknown_field(self):
        with pytest.raises(PivotValidationError, match="not shown in tables"):
            XLSXPivotClassifier.classify(Sale, roles={"price": PivotValue()})

    def test_role_map_with_invalid_marker(self):
        with pytest.raises(PivotValidationError, match="Invalid pivot role"):
            XLSXPivotClassifier.classify(Sale, roles={"region": "row"})

    def test_text_value_may_be_counted(self):
        classes = XLSXPivotClassifier.classify(
            TextSum, roles={"label": PivotValue(aggregation=AggregationType.COUNT)}
        )
        assert classes[2].aggregation is AggregationType.COUNT


class TestPivoter:
    def test_aggregation_example(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        destination = wb.create_sheet("pivot")

        table = XLSXSheetPivoter().pivot(source, destination, classification(Sale))

        assert table.row_keys == ["E", "W"]
        assert table.column_keys == [("Jan",), ("Feb",)]
        assert table.value("E", ("Jan",), "amount") == 15
        assert table.value("W", ("Feb",), "amount") is None
        assert sheet_values(destination) == [
            ["Month", "Jan", "Feb"],
            ["Region", "Amount", "Amount"],
            ["E", 15, 3],
            ["W", 2, None],
        ]
        assert destination.freeze_panes == "B3"

    def test_decoration_is_dropped(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        destination = wb.create_sheet("pivot")
        XLSXSheetPivoter().pivot(source, destination, classification(Sale))
        assert "Note" not in {cell.value for row in destination for cell in row}

    def test_two_column_fields_two_values(self):
        shipments = [
            Shipment(warehouse="North", quarter="Q1", year=2024, weight=5, parcels=2),
            Shipment(warehouse="North", quarter="Q2", year=2024, weight=7.5, parcels=1),
            Shipment(warehouse="South", quarter="Q1", year=2024, weight=3, parcels=4),
            Shipment(warehouse="North", quarter="Q1", year=2024, weight=9, parcels=1),
        ]
        wb, source = source_sheet(shipments, Shipment)
        destination = wb.create_sheet("pivot")

        XLSXSheetPivoter().pivot(source, destination, classification(Shipment))

        assert sheet_values(destination) == [
            ["Year", 2024, 2024, 2024, 2024],
            ["Quarter", "Q1", "Q1", "Q2", "Q2"],
            ["Warehouse", "Weight", "Parcels", "Weight", "Parcels"],
            ["North", 9, 2, 7.5, 1],
            ["South", 3, 1, None, None],
        ]
        assert destination.freeze_panes == "B4"

    def test_blank_column_key_is_a_group(self):
        sales = [
            Sale(region="E", month="Jan", amount=1),
            Sale(region="E", month="", amount=4),
            Sale(region="E", month=" ", amount=2),
        ]
        wb, source = source_sheet(sales, Sale)
        destination = wb.create_sheet("pivot")

        table = XLSXSheetPivoter().pivot(source, destination, classification(Sale))

        assert table.column_keys == [("Jan",), (None,)]
        assert sheet_values(destination)[2] == ["E", 1, 6]

    def test_other_aggregations(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        pivoter = XLSXSheetPivoter()
        for aggregation, expected in [
            (AggregationType.AVERAGE, 7.5),
            (AggregationType.MIN, 5),
            (AggregationType.MAX, 10),
            (AggregationType.COUNT, 2),
        ]:
            classes = XLSXPivotClassifier.classify(
                Sale, roles={"amount": PivotValue(aggregation=aggregation)}
            )
            table = pivoter.pivot(source, wb.create_sheet(aggregation.value), classes)
            assert table.value("E", ("Jan",), "amount") == expected

    def test_non_numeric_sum(self):
        wb = Workbook()
        source = wb.active
        source.append(["Region", "Month", "Amount"])
        source.append(["E", "Jan", 1])
        source.append(["E", "Jan", "n/a"])
        classes = [
            PivotFieldClassification("region", "Region", PivotRole.ROW, column_index=1),
            PivotFieldClassification(
                "month", "Month", PivotRole.COLUMN, column_index=2
            ),
            PivotFieldClassification(
                "amount",
                "Amount",
                PivotRole.VALUE,
                aggregation=AggregationType.SUM,
                column_index=3,
            ),
        ]
        with pytest.raises(PivotValidationError, match="non-numeric value 'n/a'"):
            XLSXSheetPivoter().pivot(source, wb.create_sheet("pivot"), classes)

    def test_invalid_classification_sequence(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        classes = [c for c in classification(Sale) if c.role is not PivotRole.ROW]
        with pytest.raises(PivotValidationError, match="No pivot row field"):
            XLSXSheetPivoter().pivot(source, wb.create_sheet("pivot"), classes)

    def test_headers_are_never_formulas(self):
        records = [FormulaHeaders(region="E", month="Jan", amount=2)]
        wb, source = source_sheet(records, FormulaHeaders)
        destination = wb.create_sheet("pivot")

        XLSXSheetPivoter().pivot(source, destination, classification(FormulaHeaders))

        assert sheet_values(destination) == [
            ["=Month", "Jan"],
            ["=Region", "=Amount"],
            ["E", 2],
        ]
        for coordinate in ("A1", "A2", "B2"):
            assert destination[coordinate].data_type == "s"


class TestEmbeddedClassification:
    def test_annotation_rows(self, sample_sales):
        _wb, source = source_sheet(sample_sales, Sale)
        annotate_source_sheet(source, classification(Sale))

        assert sheet_values(source)[:4] == [
            ["row", "column", "value", "deco"],
            [0, 1, 1, 0],
            [None, None, "sum", None],
            ["Region", "Month", "Amount", "Note"],
        ]
        classes = read_source_annotations(source)
        assert [c.role for c in classes] == [
            PivotRole.ROW,
            PivotRole.COLUMN,
            PivotRole.VALUE,
            PivotRole.DECORATION,
        ]

    def test_same_result_as_in_memory(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        in_memory = wb.create_sheet("in memory")
        embedded = wb.create_sheet("embedded")
        pivoter = XLSXSheetPivoter()

        pivoter.pivot(source, in_memory, classification(Sale))
        annotate_source_sheet(source, classification(Sale))
        pivoter.pivot(source, embedded)
        strip_source_annotations(source)

        assert sheet_values(embedded) == sheet_values(in_memory)

    def test_source_sheet_is_restored(self, sample_sales):
        wb, source = source_sheet(sample_sales, Sale)
        before = sheet_values(source)

        annotate_source_sheet(source, classification(Sale))
        XLSXSheetPivoter().pivot(source, wb.create_sheet("pivot"))
        strip_source_annotations(source)

        assert sheet_values(source) == before

    def test_invalid_role_tag(self, sample_sales):
        _wb, source = source_sheet(sample_sales, Sale)
        annotate_source_sheet(source, classification(Sale))
        source["A1"].value = "rows"

        with pytest.raises(PivotValidationError, match="Invalid pivot annotation"):
            read_source_annotations(source)

    def test_missing_row_annotation(self, sample_sales):
        _wb, source = source_sheet(sample_sales, Sale)
        annotate_source_sheet(source, classification(Sale))
        source["A1"].value = "skip"

        with pytest.raises(PivotValidationError, match="No pivot row field"):
            read_source_annotations(source)
