"""Tests for the workbook bootstrap script."""

from __future__ import annotations

import openpyxl
import pytest

from beipoa_erp import constants, data_manager, setup_excel


def test_create_master_workbook_writes_every_sheet(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "book.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == [sheet.value for sheet in data_manager.SHEET_COLUMNS]
    products = workbook[constants.SheetName.PRODUCTS.value]
    assert [cell.value for cell in products[1]] == list(data_manager.SHEET_COLUMNS[constants.SheetName.PRODUCTS])
    assert products["A1"].font.bold is True


def test_create_master_workbook_seeds_accounts_and_walk_in(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "book.xlsx")

    store = data_manager.WorkbookStore(data_manager.open_workbook(destination))
    accounts = [row["AccountID"] for row in store.scan(constants.SheetName.ACCOUNTS)]
    customers = [row["CustomerID"] for row in store.scan(constants.SheetName.CUSTOMERS)]
    assert accounts == [account_id for account_id, _ in constants.PAYMENT_ACCOUNTS.values()]
    assert customers == [constants.WALK_IN_CUSTOMER_ID]


def test_create_master_workbook_without_seeds(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "book.xlsx", seed_defaults=False)

    store = data_manager.WorkbookStore(data_manager.open_workbook(destination))
    assert store.scan(constants.SheetName.CUSTOMERS) == []


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    destination = tmp_path / "book.xlsx"
    setup_excel.create_master_workbook(destination)

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)

    setup_excel.create_master_workbook(destination, overwrite=True)


def test_main_creates_workbook_from_config(config_factory, capsys):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0

    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_reports_existing_workbook(config_factory, capsys):
    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
