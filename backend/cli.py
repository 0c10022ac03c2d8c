import typer

from backend.app.core.database import Database
from backend.app.services.ledger import KIND_GRANT, CreditLedger, scoped_idempotency_key
from backend.app.services.operation_log import CreditOperationLogger
from backend.app.services.plans import PlanStore

app = typer.Typer(help="Inspect and adjust the ad credit ledger.")

DATABASE_URL_OPTION = typer.Option(
    None,
    "--database-url",
    envvar="ADG_DATABASE_URL",
    help="SQLAlchemy URL of the ledger database (defaults to settings).",
)


def _open_db(database_url: str | None) -> Database:
    db = Database(database_url)
    if db.settings.is_sqlite:
        db.create_all()
    return db


@app.command("balance")
def balance(
    account_id: str = typer.Argument(..., help="Account identifier."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Print the current credit balance of an account."""
    ledger = CreditLedger(_open_db(database_url))
    typer.echo(f"{account_id}: {ledger.get_balance(account_id)} credits")


@app.command("grant")
def grant(
    account_id: str = typer.Argument(..., help="Account identifier."),
    amount: int = typer.Argument(..., min=1, help="Credits to add."),
    reason: str = typer.Option("manual_grant", "--reason", help="Reason recorded on the operation."),
    idempotency_key: str | None = typer.Option(
        None,
        "--idempotency-key",
        help="Apply the grant at most once for this key.",
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Grant credits to an account."""
    db = _open_db(database_url)
    ledger = CreditLedger(db)
    result = ledger.grant_credits(
        account_id,
        amount,
        reason=reason,
        idempotency_key=scoped_idempotency_key("cli", KIND_GRANT, account_id, idempotency_key),
    )
    if not result.applied:
        typer.echo(f"Grant already applied for key {idempotency_key}; balance {result.new_balance}")
        return
    CreditOperationLogger(db).log_success(
        account_id=account_id,
        kind=KIND_GRANT,
        amount=amount,
        reason=reason,
        balance_after=result.new_balance,
        operation_id=result.operation_id,
    )
    typer.echo(f"Granted {amount} credits to {account_id}; balance {result.new_balance}")


@app.command("operations")
def operations(
    account_id: str = typer.Argument(..., help="Account identifier."),
    limit: int = typer.Option(20, "--limit", min=1, max=500),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """List the most recent credit operations of an account."""
    ledger = CreditLedger(_open_db(database_url))
    rows = ledger.list_operations(account_id, limit=limit)
    if not rows:
        typer.echo("No operations recorded.")
        return
    for row in rows:
        line = f"{row.created_at}  {row.kind:<5}  {row.amount:>6}  {row.status:<7}  {row.reason}"
        if row.balance_after is not None:
            line += f"  balance={row.balance_after}"
        if row.error_message:
            line += f"  error={row.error_message}"
        typer.echo(line)


@app.command("add-plan")
def add_plan(
    plan_id: str = typer.Argument(..., help="Internal plan identifier."),
    price_id: str = typer.Argument(..., help="Stripe price id mapped to this plan."),
    credits_granted: int = typer.Argument(..., min=1, help="Credits granted per purchase or renewal."),
    name: str | None = typer.Option(None, "--name", help="Display name (defaults to the plan id)."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Register or update the plan for a Stripe price."""
    plan = PlanStore(_open_db(database_url)).upsert(
        plan_id=plan_id,
        name=name or plan_id,
        external_price_id=price_id,
        credits_granted=credits_granted,
    )
    typer.echo(f"Plan {plan.id} -> {plan.external_price_id}: {plan.credits_granted} credits")


def main() -> None:
    """Entry point for `python -m backend.cli`."""
    app()  # pragma: no cover


if __name__ == "__main__":
    main()  # pragma: no cover
