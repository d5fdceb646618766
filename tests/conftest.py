# tests/conftest.py
# ---------------------------------------------------------------------
# - every test gets its own data dir under tmp_path (no shared JSON files)
# - one owner context "shop-1"; a second owner is built where isolation matters
# - `catalog` seeds two books, `customer` one customer
# ---------------------------------------------------------------------

from __future__ import annotations

import pytest

from bookstore.models.book import Book
from bookstore.models.context import OwnerContext
from bookstore.models.customer import Customer
from bookstore.services.customer_service import CustomerService
from bookstore.services.record_service import RecordService
from bookstore.services.report_service import ReportService
from bookstore.services.settings_service import SettingsService
from bookstore.services.workflow_service import WorkflowService


@pytest.fixture()
def ctx() -> OwnerContext:
    return OwnerContext(owner_id="shop-1")


@pytest.fixture()
def records(tmp_path) -> RecordService:
    return RecordService(tmp_path / "data")


@pytest.fixture()
def settings(records) -> SettingsService:
    return SettingsService(records.data_dir)


@pytest.fixture()
def workflow(records) -> WorkflowService:
    return WorkflowService(records)


@pytest.fixture()
def customers(records) -> CustomerService:
    return CustomerService(records)


@pytest.fixture()
def reports(records, settings) -> ReportService:
    return ReportService(records, settings)


@pytest.fixture()
def catalog(ctx, workflow):
    poems = workflow.add_book(ctx, Book(id="b-poems", title="Poems", stock=10, price=300, production_price=180))
    atlas = workflow.add_book(ctx, Book(id="b-atlas", title="Atlas", stock=4, price=900, production_price=600))
    return {"poems": poems, "atlas": atlas}


@pytest.fixture()
def customer(ctx, customers) -> Customer:
    return customers.add_customer(ctx, Customer(id="C1", name="Rahim", email="rahim@gmail.com"))
