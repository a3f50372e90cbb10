"""Tests for the operator command line."""
import argparse
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_billing import cli
from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.models.customer import Customer, CustomerStatus
from utils.dwolla import BASE_URL, FakeDwolla


def test_parser_reads_bill_window() -> None:
    """bill accepts ISO timestamps, including a trailing Z."""
    args = cli.build_parser().parse_args(["bill", "--start", "2024-01-08T08:00:00Z", "--end", "2024-01-15T08:00:00+00:00"])

    assert args.command == "bill"
    assert args.start == datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)
    assert args.end == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


def test_parser_rejects_bad_timestamp() -> None:
    """Unparseable timestamps are a usage error."""
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["bill", "--start", "last monday"])


def test_parser_reads_micro_deposit_amounts_in_dollars() -> None:
    """Micro-deposit amounts are typed in dollars."""
    args = cli.build_parser().parse_args(["verify-micro-deposits", "c-1", "0.03", "0.09"])

    assert args.amount1 == Decimal("0.03")
    assert args.amount2 == Decimal("0.09")


def test_parser_rejects_non_positive_amount() -> None:
    """Zero or negative micro-deposits are a usage error."""
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["verify-micro-deposits", "c-1", "0", "0.09"])


def test_main_reports_invalid_input() -> None:
    """Invalid provisioning input exits with status 2 before touching the database."""
    exit_code = cli.main(
        [
            "setup-customer",
            "c-1",
            "--name",
            "Ada",
            "--email",
            "not-an-email",
            "--funding-href",
            f"{BASE_URL}/funding-sources/fs-1",
        ]
    )

    assert exit_code == 2


@pytest.mark.asyncio
async def test_setup_customer_activates_customer(
    monkeypatch: pytest.MonkeyPatch,
    session_factory: async_sessionmaker[AsyncSession],
    db_session: AsyncSession,
) -> None:
    """setup-customer stores the funding source and activates the customer."""
    monkeypatch.setattr(cli, "AsyncSessionLocal", session_factory)
    args = cli.build_parser().parse_args(
        [
            "setup-customer",
            "c-1",
            "--name",
            "Ada Lovelace",
            "--email",
            "ada@example.com",
            "--funding-href",
            f"{BASE_URL}/funding-sources/fs-1",
        ]
    )

    result = await cli.run_command(args)

    assert result["crm_contact_id"] == "c-1"
    assert result["status"] == "active"

    customer = (await db_session.execute(select(Customer).where(Customer.crm_contact_id == "c-1"))).scalar_one()
    assert customer.status == CustomerStatus.ACTIVE
    assert customer.dwolla_funding_href == f"{BASE_URL}/funding-sources/fs-1"


@pytest.mark.asyncio
async def test_verify_micro_deposits_command(
    monkeypatch: pytest.MonkeyPatch,
    session_factory: async_sessionmaker[AsyncSession],
    db_session: AsyncSession,
    fake_dwolla: FakeDwolla,
    dwolla_adapter: DwollaAdapter,
) -> None:
    """verify-micro-deposits converts dollars to cents and posts both amounts."""
    db_session.add(
        Customer(
            crm_contact_id="c-2",
            name="Grace",
            email="grace@example.com",
            dwolla_funding_href=f"{BASE_URL}/funding-sources/fs-2",
            status=CustomerStatus.ACTIVE,
        )
    )
    await db_session.commit()

    monkeypatch.setattr(cli, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(cli, "DwollaAdapter", lambda: dwolla_adapter)

    result = await cli.run_command(
        argparse.Namespace(command="verify-micro-deposits", crm_contact_id="c-2", amount1=Decimal("0.03"), amount2=Decimal("0.09"))
    )

    assert result == {"crm_contact_id": "c-2", "micro_deposits": "verified"}
    assert fake_dwolla.micro_deposits[-1]["body"]["amount1"] == {"value": "0.03", "currency": "USD"}
