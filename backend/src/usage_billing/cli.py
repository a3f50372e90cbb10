"""Operator command line for customer provisioning and billing runs."""
import argparse
import asyncio
import json
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

import structlog
from pydantic import ValidationError

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.database import AsyncSessionLocal
from usage_billing.exceptions import ProcessorError, UsageBillingError
from usage_billing.middleware.logging import setup_logging
from usage_billing.schemas.customer import Customer, CustomerProvision
from usage_billing.services.customer_service import CustomerService
from usage_billing.utils.currency import dollars_to_cents
from usage_billing.workers.billing_run import run_billing

logger = structlog.get_logger(__name__)


def _timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO 8601 timestamp: {value!r}") from None


def _dollars(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid dollar amount: {value!r}") from None
    if amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive: {value!r}")
    return amount


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for the ``usage-billing`` command."""
    parser = argparse.ArgumentParser(
        prog="usage-billing",
        description="Provision customers and run usage billing",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    setup = commands.add_parser("setup-customer", help="Attach a funding source and activate a customer")
    setup.add_argument("crm_contact_id", help="CRM contact id")
    setup.add_argument("--name", required=True, help="Customer name")
    setup.add_argument("--email", required=True, help="Customer email")
    setup.add_argument("--funding-href", required=True, help="Dwolla funding source href")
    setup.add_argument("--customer-href", help="Dwolla customer href (optional)")

    status = commands.add_parser("funding-status", help="Show the customer's funding source status")
    status.add_argument("crm_contact_id", help="CRM contact id")

    initiate = commands.add_parser("initiate-micro-deposits", help="Send verification micro-deposits")
    initiate.add_argument("crm_contact_id", help="CRM contact id")

    verify = commands.add_parser("verify-micro-deposits", help="Confirm received micro-deposit amounts")
    verify.add_argument("crm_contact_id", help="CRM contact id")
    verify.add_argument("amount1", type=_dollars, help="First micro-deposit in dollars, e.g. 0.03")
    verify.add_argument("amount2", type=_dollars, help="Second micro-deposit in dollars, e.g. 0.09")

    bill = commands.add_parser("bill", help="Bill unbilled usage (previous week by default)")
    bill.add_argument("--start", type=_timestamp, help="Inclusive window start (ISO 8601)")
    bill.add_argument("--end", type=_timestamp, help="Exclusive window end (ISO 8601)")

    return parser


async def _setup_customer(args: argparse.Namespace) -> dict[str, Any]:
    data = CustomerProvision(
        crm_contact_id=args.crm_contact_id,
        name=args.name,
        email=args.email,
        dwolla_funding_href=args.funding_href,
        dwolla_customer_href=args.customer_href,
    )
    async with AsyncSessionLocal() as db:
        customer = await CustomerService(db).provision_customer(data)
        await db.commit()
    return Customer.model_validate(customer).model_dump(mode="json")


async def _with_dwolla(args: argparse.Namespace) -> dict[str, Any]:
    async with DwollaAdapter() as dwolla, AsyncSessionLocal() as db:
        service = CustomerService(db, dwolla)

        if args.command == "funding-status":
            return await service.funding_source_status(args.crm_contact_id)

        if args.command == "initiate-micro-deposits":
            await service.initiate_micro_deposits(args.crm_contact_id)
            return {"crm_contact_id": args.crm_contact_id, "micro_deposits": "initiated"}

        await service.verify_micro_deposits(
            args.crm_contact_id,
            dollars_to_cents(args.amount1),
            dollars_to_cents(args.amount2),
        )
        return {"crm_contact_id": args.crm_contact_id, "micro_deposits": "verified"}


async def _bill(args: argparse.Namespace) -> dict[str, Any]:
    summary = await run_billing(args.start, args.end)
    return summary.model_dump(mode="json")


async def run_command(args: argparse.Namespace) -> dict[str, Any]:
    """Execute a parsed command and return its JSON-serializable result."""
    if args.command == "setup-customer":
        return await _setup_customer(args)
    if args.command == "bill":
        return await _bill(args)
    return await _with_dwolla(args)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        result = asyncio.run(run_command(args))
    except ValidationError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2
    except ProcessorError as e:
        logger.error("cli_processor_error", command=args.command, status_code=e.status_code, error=str(e))
        print(f"Dwolla error: {e}", file=sys.stderr)
        return 1
    except UsageBillingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
