import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import nbformat
import typer

from cellrunner.errors import KernelRuntimeError
from cellrunner.log_utils import setup_logging
from cellrunner.models.execution import CellExecutionState, CellSpec, ErrorOutput, StreamOutput
from cellrunner.runtime import KernelRuntime
from cellrunner.settings import ErrorPolicy, RuntimeSettings
from cellrunner.tracebacks import clean_traceback

app = typer.Typer(no_args_is_help=True)


def _settings(server_url: Optional[str], token: Optional[str], verbose: bool) -> RuntimeSettings:
    overrides = {}
    if server_url:
        overrides["server_url"] = server_url
    if token:
        overrides["server_token"] = token
    settings = RuntimeSettings(**overrides)
    setup_logging(settings.log_level, settings.json_logs)
    if verbose:
        logging.getLogger("cellrunner").setLevel(logging.DEBUG)
    return settings


def render_outputs(state: CellExecutionState) -> str:
    lines = []
    for chunk in state.outputs:
        if isinstance(chunk, StreamOutput):
            lines.append(chunk.text.rstrip("\n"))
        elif isinstance(chunk, ErrorOutput):
            trace = clean_traceback(chunk.trace)
            lines.extend(trace or [f"{chunk.name}: {chunk.message}"])
        else:
            text = chunk.mime_bundle.get("text/plain")
            if text is None:
                text = f"<{', '.join(chunk.mime_bundle) or 'empty'} output>"
            elif isinstance(text, list):
                text = "".join(text)
            prefix = f"Out[{chunk.execution_count}]: " if chunk.execution_count else ""
            lines.append(prefix + text)
    return "\n".join(lines)


async def _kernels(settings: RuntimeSettings):
    async with KernelRuntime(settings=settings) as runtime:
        for server in runtime.servers:
            typer.echo(f"{server.id} ({server.base_url})")
            for spec in await runtime.list_kernelspecs(server.id):
                typer.echo(f"  {spec.name:<20} {spec.spec.display_name} [{spec.spec.language}]")
            running = await runtime.list_kernels(server.id)
            if running:
                typer.echo("  running:")
            for remote in running:
                state = remote.execution_state or "unknown"
                typer.echo(f"  {remote.id}  {remote.name} ({state})")


@app.command()
def kernels(
    server_url: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_URL"),
    token: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_TOKEN"),
    verbose: bool = False,
):
    """List the kernelspecs offered by each configured kernel server and its running kernels."""
    asyncio.run(_kernels(_settings(server_url, token, verbose)))


async def _ping(settings: RuntimeSettings) -> bool:
    ok = True
    async with KernelRuntime(settings=settings) as runtime:
        for server in runtime.servers:
            status = await runtime.ping(server.id)
            version = f" (version {status.version})" if status.version else ""
            typer.echo(f"{server.id}: {status.message}{version}")
            ok = ok and status.success
    return ok


@app.command()
def ping(
    server_url: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_URL"),
    token: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_TOKEN"),
    verbose: bool = False,
):
    """Check that every configured kernel server is reachable and accepts its token."""
    if not asyncio.run(_ping(_settings(server_url, token, verbose))):
        raise typer.Exit(code=1)


async def _exec(
    settings: RuntimeSettings,
    code: str,
    kernel: Optional[str],
    timeout: Optional[float],
    kernel_id: Optional[str] = None,
):
    async with KernelRuntime(settings=settings) as runtime:
        session = await runtime.open_session(kernel_name=kernel, kernel_id=kernel_id)
        state = await runtime.run_cell("cell", code, session.id, timeout=timeout)
    output = render_outputs(state)
    if output:
        typer.echo(output)
    return state


@app.command(name="exec")
def exec_(
    code: str,
    kernel: Optional[str] = None,
    timeout: Optional[float] = None,
    kernel_id: Optional[str] = typer.Option(None, help="Run on this already running kernel"),
    server_url: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_URL"),
    token: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_TOKEN"),
    verbose: bool = False,
):
    """Run a snippet of code on a fresh kernel, or a running one, and print its outputs."""
    settings = _settings(server_url, token, verbose)
    try:
        state = asyncio.run(_exec(settings, code, kernel, timeout, kernel_id))
    except KernelRuntimeError as e:
        typer.echo(f"{e.kind}: {e}", err=True)
        raise typer.Exit(code=2)
    if state.last_error:
        raise typer.Exit(code=1)


def notebook_cells(path: Path) -> List[CellSpec]:
    nb = nbformat.read(str(path), as_version=4)
    cells = []
    for index, cell in enumerate(nb.cells):
        if cell.cell_type != "code":
            continue
        cell_id = cell.get("id") or f"cell-{index}"
        cells.append(CellSpec(cell_id=cell_id, code=cell.source))
    return cells


async def _run(
    settings: RuntimeSettings,
    path: Path,
    kernel: Optional[str],
    error_policy: ErrorPolicy,
    timeout: Optional[float],
) -> bool:
    cells = notebook_cells(path)
    async with KernelRuntime(settings=settings) as runtime:
        session = await runtime.open_session(kernel_name=kernel)
        report = await runtime.run_all(
            cells, session_id=session.id, error_policy=error_policy, timeout=timeout
        )
        for cell in cells:
            state = runtime.cell_state(cell.cell_id)
            count = state.execution_count if state.execution_count is not None else " "
            typer.echo(f"In [{count}]: {cell.cell_id}")
            output = render_outputs(state)
            if output:
                typer.echo(output)
    typer.echo(
        f"{len(report.completed)} completed, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped"
    )
    return not report.failed


@app.command()
def run(
    notebook: Path = typer.Argument(..., exists=True, dir_okay=False),
    kernel: Optional[str] = None,
    stop_on_error: bool = False,
    timeout: Optional[float] = None,
    server_url: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_URL"),
    token: Optional[str] = typer.Option(None, envvar="CELLRUNNER_SERVER_TOKEN"),
    verbose: bool = False,
):
    """Run every code cell of a notebook in order and print the outputs."""
    policy = ErrorPolicy.stop_on_error if stop_on_error else ErrorPolicy.continue_on_error
    try:
        ok = asyncio.run(
            _run(_settings(server_url, token, verbose), notebook, kernel, policy, timeout)
        )
    except KernelRuntimeError as e:
        typer.echo(f"{e.kind}: {e}", err=True)
        raise typer.Exit(code=2)
    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
