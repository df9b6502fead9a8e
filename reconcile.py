#!/usr/bin/env python3
"""
CloudTrail Projection Updater — Interactive Reconcile Script

Finds the deployed stack, shows the current account ID and region projection
values of the CloudTrail Glue table, and invokes the updater Lambda (as a dry
run or for real) through an interactive terminal UI.

Usage:
    python3 reconcile.py
"""

import json
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# Ensure sibling modules are importable regardless of working directory
sys.path.insert(0, str(Path(__file__).resolve().parent))

from _helpers import (
    get_default_region,
    get_stack_outputs,
    get_stack_resource_id,
    install_dependencies,
    run_aws,
)

install_dependencies(["rich"])

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

console = Console()

DEFAULT_STACK_NAME = "cloudtrail-organization-athena"
LAMBDA_LOGICAL_ID = "GlueCloudTrailTableProjectionAccountIdUpdateLambda"
PROJECTION_DIMENSIONS = ("accountid", "region")


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------


def preflight_checks() -> Dict:
    """Verify AWS CLI and credentials. Returns context dict."""
    console.print()
    console.print("[bold]Pre-flight Checks[/bold]")
    console.print()

    # 1. AWS CLI
    with console.status("Checking AWS CLI..."):
        result = subprocess.run(["aws", "--version"], capture_output=True, text=True)
    if result.returncode != 0:
        console.print(
            Panel(
                "[red]AWS CLI is not installed.[/red]\n\n"
                "Install it from: https://aws.amazon.com/cli/",
                title="Error",
                border_style="red",
            )
        )
        sys.exit(1)
    version = result.stdout.strip().split()[0] if result.stdout else "unknown"
    console.print(f"  [green]✓[/green] AWS CLI: {version}")

    # 2. AWS credentials (with retry loop)
    while True:
        with console.status("Checking AWS credentials..."):
            ok, output = run_aws(["sts", "get-caller-identity"])
        if ok:
            identity = json.loads(output)
            console.print(f"  [green]✓[/green] Authenticated: {identity.get('Arn', '')}")
            break
        console.print()
        console.print(
            Panel(
                "[yellow]AWS credentials are not configured or have expired.[/yellow]\n\n"
                "Options:\n"
                "  • Run [bold]aws configure[/bold] to set up access keys\n"
                "  • Run [bold]aws sso login[/bold] if using SSO",
                title="Authentication Required",
                border_style="yellow",
            )
        )
        if not Confirm.ask("  Retry after authenticating?", default=True):
            console.print("\n[dim]Cancelled.[/dim]")
            sys.exit(0)

    return {"default_region": get_default_region()}


# ---------------------------------------------------------------------------
# Step 1: Find the stack
# ---------------------------------------------------------------------------


def _load_stack(stack_name: str, region: str) -> Optional[Dict[str, str]]:
    """Stack outputs plus the name of the updater Lambda."""
    outputs = get_stack_outputs(stack_name, region)
    if not outputs:
        return None
    function_name = get_stack_resource_id(stack_name, LAMBDA_LOGICAL_ID, region)
    if function_name:
        outputs["LambdaFunctionName"] = function_name
    return outputs


def _fail(message: str) -> None:
    console.print(Panel(f"[red]{message}[/red]", title="Error", border_style="red"))
    sys.exit(1)


def step_find_stack(default_region: Optional[str]) -> Tuple[str, str, Dict[str, str]]:
    """Find the deployed stack. Returns (region, stack_name, outputs)."""
    console.print()
    console.print("[bold]Step 1 · Find Deployed Stack[/bold]")
    console.print()

    region = Prompt.ask("  AWS Region", default=default_region or "us-east-1")

    with console.status(f"  Looking for stack [cyan]{DEFAULT_STACK_NAME}[/cyan]..."):
        outputs = _load_stack(DEFAULT_STACK_NAME, region)

    if outputs:
        console.print(f"  [green]✓[/green] Found stack: [bold]{DEFAULT_STACK_NAME}[/bold]")
        _show_stack_info(outputs)
        return region, DEFAULT_STACK_NAME, outputs

    console.print(f"  [dim]Stack '{DEFAULT_STACK_NAME}' not found. Searching...[/dim]")
    console.print()

    with console.status("  Listing CloudFormation stacks..."):
        ok, output = run_aws(
            [
                "cloudformation",
                "list-stacks",
                "--stack-status-filter",
                "CREATE_COMPLETE",
                "UPDATE_COMPLETE",
            ],
            region=region,
        )

    candidates = []
    if ok:
        stacks = json.loads(output).get("StackSummaries", [])
        candidates = [
            s["StackName"] for s in stacks if "cloudtrail" in s.get("StackName", "").lower()
        ]
    else:
        console.print(f"  [red]✗[/red] Failed to list stacks: {output}")

    if not candidates:
        if ok:
            console.print("  [yellow]![/yellow] No CloudTrail-related stacks found.")
        stack_name = Prompt.ask("  Enter stack name")
    elif len(candidates) == 1:
        stack_name = candidates[0]
        console.print(f"  [green]✓[/green] Found stack: [bold]{stack_name}[/bold]")
    else:
        for i, name in enumerate(candidates, 1):
            console.print(f"  [bold]{i}[/bold]. {name}")
        console.print()
        while True:
            choice_str = Prompt.ask(f"  Select stack (1-{len(candidates)})", default="1")
            if choice_str.isdigit() and 1 <= int(choice_str) <= len(candidates):
                stack_name = candidates[int(choice_str) - 1]
                break
            console.print(f"  [red]✗[/red] Enter a number between 1 and {len(candidates)}.")

    outputs = _load_stack(stack_name, region)
    if not outputs:
        _fail(f"Could not find stack '{stack_name}' in {region}.")

    _show_stack_info(outputs)
    return region, stack_name, outputs


def _show_stack_info(outputs: Dict[str, str]) -> None:
    """Display key stack outputs."""
    table = Table(box=box.ROUNDED, show_edge=True, pad_edge=True)
    table.add_column("Resource", style="cyan")
    table.add_column("Value", style="white")

    if "GlueDatabase" in outputs:
        table.add_row("Glue Database", outputs["GlueDatabase"])
    if "GlueTable" in outputs:
        table.add_row("Glue Table", outputs["GlueTable"])
    if "LambdaFunctionName" in outputs:
        table.add_row("Lambda Function", outputs["LambdaFunctionName"])

    console.print()
    console.print(table)


# ---------------------------------------------------------------------------
# Step 2: Current projection values
# ---------------------------------------------------------------------------


def read_projection_values(
    region: str, database: str, table: str
) -> Optional[Dict[str, List[str]]]:
    """Read the projection values of the Glue table. None if unreadable."""
    ok, output = run_aws(
        ["glue", "get-table", "--database-name", database, "--name", table],
        region=region,
    )
    if not ok:
        return None
    try:
        parameters = json.loads(output)["Table"].get("Parameters", {})
    except (json.JSONDecodeError, KeyError):
        return None

    values = {}
    for dimension in PROJECTION_DIMENSIONS:
        raw = parameters.get(f"projection.{dimension}.values")
        if raw is None:
            continue
        values[dimension] = sorted({v.strip() for v in raw.split(",") if v.strip()})
    return values


def step_show_projection(region: str, outputs: Dict[str, str]) -> Dict[str, List[str]]:
    """Show the account IDs and regions currently projected on the table."""
    console.print()
    console.print("[bold]Step 2 · Current Projection Values[/bold]")
    console.print()

    database = outputs.get("GlueDatabase", "")
    table_name = outputs.get("GlueTable", "")
    if not database or not table_name:
        _fail("Stack outputs do not include GlueDatabase and GlueTable.")

    with console.status(f"  Reading Glue table {database}.{table_name}..."):
        values = read_projection_values(region, database, table_name)

    if values is None:
        _fail(f"Could not read Glue table {database}.{table_name}.")

    table = Table(box=box.ROUNDED, show_edge=True, pad_edge=True)
    table.add_column("Projection", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Values", style="white")
    for dimension in PROJECTION_DIMENSIONS:
        if dimension not in values:
            table.add_row(dimension, "-", "[red]property missing[/red]")
            continue
        current = values[dimension]
        table.add_row(dimension, str(len(current)), ", ".join(current) or "[dim](empty)[/dim]")
    console.print(table)

    missing = [d for d in PROJECTION_DIMENSIONS if d not in values]
    if missing:
        console.print(
            f"  [yellow]![/yellow] Missing projection properties: {', '.join(missing)}. "
            "The Lambda will refuse to update this table."
        )
    return values


# ---------------------------------------------------------------------------
# Step 3: Invoke Lambda
# ---------------------------------------------------------------------------


def invoke_updater(
    region: str, function_name: str, dry_run: bool
) -> Tuple[bool, Dict]:
    """Invoke the updater synchronously. Returns (success, response_payload)."""
    with tempfile.NamedTemporaryFile(suffix=".json", delete=False) as tmp:
        output_file = Path(tmp.name)

    try:
        ok, output = run_aws(
            [
                "lambda",
                "invoke",
                "--function-name",
                function_name,
                "--payload",
                json.dumps({"dry_run": dry_run}),
                "--cli-binary-format",
                "raw-in-base64-out",
                str(output_file),
            ],
            region=region,
        )
        if not ok:
            return False, {"errorMessage": output}

        try:
            function_error = json.loads(output).get("FunctionError", "")
        except json.JSONDecodeError:
            function_error = ""
        try:
            payload = json.loads(output_file.read_text() or "{}")
        except json.JSONDecodeError:
            payload = {}
    finally:
        output_file.unlink(missing_ok=True)

    if function_error:
        return False, payload
    return True, payload


def describe_outcome(result: Dict) -> str:
    """One-line status for a dimension result returned by the Lambda."""
    if not result.get("changed"):
        return "[green]unchanged[/green]"
    verb = "would update" if result.get("dry_run") else "updated"
    parts = []
    if result.get("added"):
        parts.append(f"+{len(result['added'])}")
    if result.get("removed"):
        parts.append(f"-{len(result['removed'])}")
    return f"[yellow]{verb}[/yellow] ({' '.join(parts)})" if parts else f"[yellow]{verb}[/yellow]"


def step_invoke_lambda(region: str, outputs: Dict[str, str]) -> Optional[Dict]:
    """Invoke the updater Lambda and show the per-dimension outcome."""
    console.print()
    console.print("[bold]Step 3 · Reconcile Projection Values[/bold]")
    console.print()
    console.print(
        "  The Lambda runs daily on a schedule.\n"
        "  You can also run it now, either as a dry run or to apply changes."
    )
    console.print()

    function_name = outputs.get("LambdaFunctionName") or Prompt.ask(
        "  Lambda function name"
    )
    dry_run = not Confirm.ask("  Apply changes to the Glue table?", default=False)

    console.print()
    console.print(f"  Function: {function_name}")
    console.print(f"  Mode:     {'dry run' if dry_run else 'apply'}")
    console.print()

    with console.status("  Invoking Lambda..."):
        ok, payload = invoke_updater(region, function_name, dry_run)

    if not ok:
        message = payload.get("errorMessage") or json.dumps(payload)[:500]
        console.print(
            Panel(
                f"[red]Lambda invocation failed.[/red]\n\n{message}",
                title="Error",
                border_style="red",
            )
        )
        return None

    body = payload.get("body", {})
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError:
            body = {}

    table = Table(
        title="Reconciliation Result",
        box=box.ROUNDED,
        show_edge=True,
        pad_edge=True,
        title_style="bold",
    )
    table.add_column("Projection", style="cyan")
    table.add_column("Outcome")
    table.add_column("Added", style="green")
    table.add_column("Removed", style="red")
    for result in body.get("dimensions", []):
        table.add_row(
            result.get("dimension", ""),
            describe_outcome(result),
            ", ".join(result.get("added", [])),
            ", ".join(result.get("removed", [])),
        )
    console.print(table)
    console.print(f"  [green]✓[/green] {body.get('message', 'Done')}")
    return body


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main():
    console.print()
    console.print(
        Panel(
            "[bold]CloudTrail Projection Updater[/bold] — Reconcile\n"
            "[dim]Inspect and refresh Athena partition projection values[/dim]",
            box=box.ROUNDED,
            padding=(1, 4),
        )
    )

    ctx = preflight_checks()
    region, stack_name, outputs = step_find_stack(ctx["default_region"])
    step_show_projection(region, outputs)
    step_invoke_lambda(region, outputs)

    console.print()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        console.print("\n\n[dim]Cancelled.[/dim]\n")
        sys.exit(0)
