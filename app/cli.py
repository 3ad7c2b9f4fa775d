# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""perks-admin - operator CLI for Perks Gate.

Runs the same services as the HTTP admin API directly against the
configured database. Mutations are attributed to ``--admin-email`` in
the audit log.

Examples:
    perks-admin init-db
    perks-admin partners list --format table
    perks-admin requests list --status pending
    perks-admin requests approve 3f0c... --admin-email ops@brdg.app
    perks-admin audit list --action access_request.approve
"""

import json
from enum import Enum
from typing import Any, Optional, Sequence

import typer
from rich.console import Console
from rich.table import Table

from app.access.exceptions import PortalError
from app.access.requests import AccessRequestService
from app.auth.identity import Identity
from app.audit.logger import get_audit_logger
from app.db.session import get_db_session, init_database
from app.partners.service import PartnerService

app = typer.Typer(
    name="perks-admin",
    help="Perks Gate admin tools.",
    no_args_is_help=True,
)
partners_app = typer.Typer(help="Partner configuration", no_args_is_help=True)
requests_app = typer.Typer(help="Manual access requests", no_args_is_help=True)
audit_app = typer.Typer(help="Admin audit log", no_args_is_help=True)
app.add_typer(partners_app, name="partners")
app.add_typer(requests_app, name="requests")
app.add_typer(audit_app, name="audit")

EXIT_ERROR = 1


class OutputFormat(str, Enum):
    json = "json"
    pretty = "pretty"
    table = "table"


FORMAT_OPTION = typer.Option(OutputFormat.json, "--format", "-f", help="json, pretty or table")
ADMIN_EMAIL_OPTION = typer.Option(..., "--admin-email", help="Admin the change is attributed to.")

PARTNER_COLUMNS = ["id", "name", "slug", "isDefault", "isActive"]
REQUEST_COLUMNS = ["id", "userEmail", "companyName", "partnerName", "status", "createdAt"]
AUDIT_COLUMNS = ["createdAt", "adminEmail", "action", "entityId", "summary"]


def output_json(data: Any, pretty: bool = False) -> None:
    typer.echo(json.dumps(data, indent=2 if pretty else None, default=str))


def output_table(rows: Sequence[dict[str, Any]], columns: list[str], title: Optional[str] = None) -> None:
    """Render rows as a rich table, one column per key in ``columns``."""
    if not rows:
        typer.echo("No data to display.", err=True)
        return
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[str(row.get(col, "")) for col in columns])
    Console().print(table)


def output(
    data: Any,
    format: OutputFormat = OutputFormat.json,
    rows: Optional[Sequence[dict[str, Any]]] = None,
    columns: Optional[list[str]] = None,
    title: Optional[str] = None,
) -> None:
    """Write ``data`` in the requested format.

    Table output renders ``rows`` (defaulting to ``data`` itself when it is
    a list); a single object becomes a key/value table.
    """
    if format == OutputFormat.table:
        if rows is None and isinstance(data, list):
            rows = data
        if rows is not None and columns:
            output_table(rows, columns, title)
        elif isinstance(data, dict):
            items = [{"key": k, "value": v} for k, v in data.items()]
            output_table(items, ["key", "value"], title)
        else:
            output_json(data, pretty=True)
        return
    output_json(data, pretty=format == OutputFormat.pretty)


def output_error(exc: PortalError) -> None:
    typer.echo(json.dumps({"error": True, "code": exc.code, "message": exc.message}), err=True)
    raise typer.Exit(EXIT_ERROR)


def _cli_admin(email: str) -> Identity:
    email = email.strip().lower()
    return Identity(id=f"cli:{email}", email=email, display_name="perks-admin CLI", is_admin=True)


@app.command("init-db")
def init_db() -> None:
    """Create database tables."""
    init_database()
    typer.echo("Database initialized.", err=True)


# =============================================================================
# partners
# =============================================================================


@partners_app.command("list")
def partners_list(format: OutputFormat = FORMAT_OPTION) -> None:
    with get_db_session() as db:
        partners = [p.to_dict() for p in PartnerService(db).list()]
    output(partners, format, columns=PARTNER_COLUMNS, title="Partners")


@partners_app.command("set-default")
def partners_set_default(
    partner_id: str = typer.Argument(..., help="Partner id"),
    admin_email: str = ADMIN_EMAIL_OPTION,
    format: OutputFormat = FORMAT_OPTION,
) -> None:
    """Make a partner the default, clearing the previous default."""
    try:
        with get_db_session() as db:
            partner = PartnerService(db).set_default(partner_id, _cli_admin(admin_email)).to_dict()
    except PortalError as exc:
        output_error(exc)
    output(partner, format)


# =============================================================================
# requests
# =============================================================================


@requests_app.command("list")
def requests_list(
    status: str = typer.Option("pending", help="pending, approved, rejected or all"),
    page: int = typer.Option(1, min=1),
    page_size: int = typer.Option(20, min=1, max=100),
    format: OutputFormat = FORMAT_OPTION,
) -> None:
    try:
        with get_db_session() as db:
            result = AccessRequestService(db).list(status=status, page=page, page_size=page_size)
            data = {"data": [r.to_dict() for r in result.items], "pagination": result.pagination()}
    except PortalError as exc:
        output_error(exc)
    output(data, format, rows=data["data"], columns=REQUEST_COLUMNS, title="Access requests")


def _transition(request_id: str, action: str, admin_email: str, format: OutputFormat) -> None:
    try:
        with get_db_session() as db:
            row = AccessRequestService(db).transition(request_id, action, _cli_admin(admin_email)).to_dict()
    except PortalError as exc:
        output_error(exc)
    output(row, format)


@requests_app.command("approve")
def requests_approve(
    request_id: str = typer.Argument(..., help="Access request id"),
    admin_email: str = ADMIN_EMAIL_OPTION,
    format: OutputFormat = FORMAT_OPTION,
) -> None:
    _transition(request_id, "approve", admin_email, format)


@requests_app.command("reject")
def requests_reject(
    request_id: str = typer.Argument(..., help="Access request id"),
    admin_email: str = ADMIN_EMAIL_OPTION,
    format: OutputFormat = FORMAT_OPTION,
) -> None:
    _transition(request_id, "reject", admin_email, format)


# =============================================================================
# audit
# =============================================================================


@audit_app.command("list")
def audit_list(
    action: Optional[str] = typer.Option(None, help="e.g. partner.update"),
    entity_type: Optional[str] = typer.Option(None, help="access_request, whitelist or partner"),
    admin_email: Optional[str] = typer.Option(None, "--by", help="Filter by admin email"),
    page: int = typer.Option(1, min=1),
    page_size: int = typer.Option(50, min=1, max=100),
    format: OutputFormat = FORMAT_OPTION,
) -> None:
    result = get_audit_logger().list(
        page=page,
        page_size=page_size,
        action=action,
        entity_type=entity_type,
        admin_email=admin_email.lower() if admin_email else None,
    )
    output(result, format, rows=result["data"], columns=AUDIT_COLUMNS, title="Audit log")


if __name__ == "__main__":
    app()
