# Common pytest fixtures for all test modules
import os
import tempfile
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Annotated

import pytest
from pydantic import BaseModel, Field

from recordsheet import config
from recordsheet.xlsx_common import IdentityRegistry, XLSXMetadata
from recordsheet.xlsx_pivot import (
    AggregationType,
    PivotColumn,
    PivotDecoration,
    PivotRow,
    PivotValue,
)


# Test Enums
class Status(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# Test Models
class Employee(BaseModel):
    """Test model for employee data."""

    employee_id: int
    first_name: str
    last_name: str
    hire_date: date
    salary: float
    status: Status
    department: str | None = None
    is_active: bool = True
    notes: Annotated[str, XLSXMetadata(hidden=True)] = ""
    tags: list[str] = []


class EmployeeRowHandler(BaseModel):
    name: str
    age: int


class Budget(BaseModel):
    code: Annotated[str, XLSXMetadata(display_name="Budget Code")]
    amount: Decimal


class Customer(BaseModel):
    id: str
    name: str

    def __str__(self):
        return self.name


class Order(BaseModel):
    order_no: int
    customer: Customer


class Sale(BaseModel):
    """Pivot test model: regions by month."""

    region: Annotated[str, PivotRow()]
    month: Annotated[str, PivotColumn(order=1)]
    amount: Annotated[float, PivotValue(order=1)]
    note: Annotated[str, PivotDecoration()] = ""


class Shipment(BaseModel):
    """Pivot test model with two column fields and two value fields."""

    warehouse: Annotated[str, PivotRow()]
    quarter: Annotated[str, PivotColumn(order=2)]
    year: Annotated[int, PivotColumn(order=1)]
    weight: Annotated[float, PivotValue(order=1, aggregation=AggregationType.MAX)]
    parcels: Annotated[int, PivotValue(order=2, aggregation=AggregationType.COUNT)]


# Fixtures
@pytest.fixture(scope="session")
def datadir():
    """DATADIR as a LocalPath"""
    return Path(__file__).resolve().parent / "data"


@pytest.fixture
def temp_config():
    """
    Provides a temporary config that can be safely changed in test functions.

    After the test the config will be reset to default.
    """
    yield config

    # Reset the globally changed config to default.
    config.load_config()


@pytest.fixture
def sample_employees():
    """Sample employee data."""
    return [
        Employee(
            employee_id=1,
            first_name="John",
            last_name="Doe",
            hire_date=date(2023, 1, 15),
            salary=75000.0,
            status=Status.ACTIVE,
            department="Engineering",
        ),
        Employee(
            employee_id=2,
            first_name="Jane",
            last_name="Smith",
            hire_date=date(2022, 6, 1),
            salary=82000.5,
            status=Status.INACTIVE,
            is_active=False,
        ),
    ]


@pytest.fixture
def sample_sales():
    """Sales of regions E and W in January and February."""
    return [
        Sale(region="E", month="Jan", amount=10),
        Sale(region="E", month="Jan", amount=5),
        Sale(region="E", month="Feb", amount=3),
        Sale(region="W", month="Jan", amount=2),
    ]


@pytest.fixture
def registry():
    """Identity registry with two known customers."""
    registry = IdentityRegistry()
    registry.register(
        Customer(id="c1", name="ACME"), Customer(id="c2", name="Globex")
    )
    return registry


@pytest.fixture
def temp_file():
    """Temporary file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
        temp_path = Path(f.name)
    yield temp_path
    if temp_path.exists():
        os.unlink(temp_path)
