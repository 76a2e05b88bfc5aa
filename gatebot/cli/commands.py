"""CLI commands for gatebot."""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from gatebot import __logo__, __version__

app = typer.Typer(
    name="gatebot",
    help=f"{__logo__} gatebot - agent gateway with policy-filtered tools",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}

WORKSPACE_TEMPLATES = {
    "AGENTS.md": """# Agent Instructions

You are a helpful AI assistant. Be concise, accurate, and friendly.

## Guidelines

- Explain what you're doing before taking actions
- Ask for clarification when the request is ambiguous
- Take a fresh browser snapshot before acting on a page
""",
    "USER.md": """# User

Information about the user goes here.
""",
    "TOOLS.md": """# Tools

Notes about local tools and conventions go here.
""",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} gatebot v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    """gatebot - agent gateway with policy-filtered tools."""
    _configure_logging(verbose)


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Initialize gatebot configuration and workspace."""
    from gatebot.config.loader import get_config_path, load_config, save_config
    from gatebot.config.schema import Config
    from gatebot.utils.helpers import get_workspace_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        console.print("  [bold]y[/bold] = overwrite with defaults (existing values will be lost)")
        console.print("  [bold]N[/bold] = refresh config, keeping existing values and adding new fields")
        if typer.confirm("Overwrite?"):
            save_config(Config())
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            save_config(load_config())
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        save_config(Config())
        console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path()
    if not workspace.exists():
        workspace.mkdir(parents=True, exist_ok=True)
        console.print(f"[green]✓[/green] Created workspace at {workspace}")

    _create_workspace_templates(workspace)

    console.print(f"\n{__logo__} gatebot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.gatebot/config.json[/cyan]")
    console.print("     (providers.default.apiKey)")
    console.print('  2. Chat: [cyan]gatebot agent -m "Hello!"[/cyan]')
    console.print("  3. Start Chrome with [cyan]--remote-debugging-port=9222[/cyan] for the browser tool")


def _create_workspace_templates(workspace: Path) -> None:
    """Create default workspace template files, leaving existing ones alone."""
    for filename, content in WORKSPACE_TEMPLATES.items():
        file_path = workspace / filename
        if not file_path.exists():
            file_path.write_text(content, encoding="utf-8")
            console.print(f"  [dim]Created {filename}[/dim]")

    (workspace / "sessions").mkdir(exist_ok=True)


def _make_provider(config):
    """Create the reasoning-engine provider from config."""
    from gatebot.providers.responses_provider import ResponsesProvider

    p = config.providers.default
    if not p.api_key:
        console.print("[red]Error: No API key configured.[/red]")
        console.print("Set one in ~/.gatebot/config.json under providers.default.apiKey")
        raise typer.Exit(1)

    return ResponsesProvider(
        api_key=p.api_key,
        api_base=p.api_base,
        default_model=config.agents.defaults.model,
        provider_name=p.name,
        parallel_tool_calls=config.agents.defaults.parallel_tool_calls,
    )


# ============================================================================
# Agent
# ============================================================================


@app.command()
def agent(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    session_id: str = typer.Option(None, "--session", "-s", help="Session key (default: agent main session)"),
    agent_id: str = typer.Option(None, "--agent", "-a", help="Agent id from agents.list"),
    markdown: bool = typer.Option(True, "--markdown/--no-markdown", help="Render assistant output as Markdown"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show gatebot runtime logs during chat"),
):
    """Interact with the agent directly."""
    from gatebot.agent.loop import AgentLoop
    from gatebot.bus.queue import MessageBus
    from gatebot.config.loader import load_config

    config = load_config()
    provider = _make_provider(config)
    bus = MessageBus()

    if logs:
        logger.enable("gatebot")
    else:
        logger.disable("gatebot")

    agent_loop = AgentLoop(bus=bus, provider=provider, config=config, agent_id=agent_id)
    session_key = session_id or config.agent(agent_loop.agent_id).main_session_key or "cli:direct"
    channel, _, chat_id = session_key.partition(":")

    def render(response: str) -> None:
        console.print()
        console.print(f"[cyan]{__logo__} gatebot[/cyan]")
        console.print(Markdown(response) if markdown else response)
        console.print()

    async def run_once(text: str) -> None:
        with console.status("[dim]gatebot is thinking...[/dim]", spinner="dots"):
            response = await agent_loop.process_direct(
                text, session_key, channel=channel or "cli", chat_id=chat_id or "direct"
            )
        render(response)

    if message:
        asyncio.run(run_once(message))
        return

    console.print(f"{__logo__} Interactive mode (type [bold]exit[/bold] or [bold]Ctrl+C[/bold] to quit)\n")

    async def run_interactive() -> None:
        while True:
            try:
                user_input = await asyncio.to_thread(console.input, "[bold blue]You:[/bold blue] ")
            except (EOFError, KeyboardInterrupt):
                console.print("\nGoodbye!")
                break
            command = user_input.strip()
            if not command:
                continue
            if command.lower() in EXIT_COMMANDS:
                console.print("\nGoodbye!")
                break
            await run_once(user_input)

    asyncio.run(run_interactive())


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    port: int = typer.Option(None, "--port", "-p", help="Gateway port"),
    host: str = typer.Option(None, "--host", help="Gateway bind host"),
):
    """Start the gatebot gateway (agent loop + HTTP/WebSocket server)."""
    from gatebot.agent.loop import AgentLoop
    from gatebot.bus.queue import MessageBus
    from gatebot.config.loader import load_config
    from gatebot.gateway.invoke import ToolInvokeHandler
    from gatebot.gateway.server import GatewayServer

    config = load_config()
    if port is not None:
        config.gateway.port = port
    if host is not None:
        config.gateway.host = host

    console.print(f"{__logo__} Starting gatebot gateway on {config.gateway.host}:{config.gateway.port}...")

    bus = MessageBus()
    provider = _make_provider(config)
    agent_loop = AgentLoop(bus=bus, provider=provider, config=config)
    invoke = ToolInvokeHandler(
        agent_loop.tools,
        agent_loop.policy,
        config,
        agent_id=agent_loop.agent_id,
        provider=provider.name,
        model=agent_loop.model,
    )
    server = GatewayServer(config.gateway, bus, invoke_handler=invoke)

    console.print(f"[green]✓[/green] Tools: {', '.join(agent_loop.tools.tool_names)}")

    async def run() -> None:
        await server.start()
        try:
            await asyncio.gather(agent_loop.run(), server.run_outbound())
        finally:
            agent_loop.stop()
            await server.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Tools / Browser
# ============================================================================


@app.command()
def tools(
    agent_id: str = typer.Option(None, "--agent", "-a", help="Agent id from agents.list"),
    provider: str = typer.Option(None, "--provider", help="Provider name (default: providers.default.name)"),
    model: str = typer.Option(None, "--model", help="Model id"),
    session: str = typer.Option(None, "--session", "-s", help="Session key (decides sandboxing)"),
):
    """Show which tools a context would be offered, and why others are hidden."""
    from gatebot.agent.loop import AgentLoop
    from gatebot.agent.policy import InvocationContext, is_sandboxed
    from gatebot.bus.queue import MessageBus
    from gatebot.config.loader import load_config
    from gatebot.providers.responses_provider import ResponsesProvider

    config = load_config()
    agent_id = agent_id or config.agents.default_agent
    provider_name = provider or config.providers.default.name
    model = model or config.agent(agent_id).model or ""
    session_key = session or config.agent(agent_id).main_session_key or "cli:direct"

    # The engine is never called here; the provider only supplies its name
    loop = AgentLoop(
        MessageBus(),
        ResponsesProvider(provider_name=provider_name, default_model=model),
        config,
        agent_id=agent_id,
    )
    context = InvocationContext(
        session_key=session_key,
        agent_id=agent_id,
        provider=provider_name,
        model=model,
        sandboxed=is_sandboxed(config, agent_id, session_key),
    )

    table = Table(title=f"Tools for {agent_id} @ {provider_name}/{model} ({session_key})")
    table.add_column("Tool", style="cyan")
    table.add_column("Scopes")
    table.add_column("Offered")
    table.add_column("Reason", style="dim")
    tool_by_name = {t.name: t for t in loop.tools.list()}
    for decision in loop.policy.decide(loop.tools.list(), context):
        offered = "[green]✓[/green]" if decision.allowed else "[red]✗[/red]"
        scopes = ", ".join(sorted(tool_by_name[decision.tool].scopes))
        table.add_row(decision.tool, scopes, offered, decision.reason or "")

    console.print(table)
    if context.sandboxed:
        console.print("[yellow]Session is sandboxed[/yellow]")


@app.command()
def snapshot(
    target_id: str = typer.Option(None, "--target", "-t", help="Tab id (default: first tab)"),
    endpoint: str = typer.Option(None, "--endpoint", "-e", help="DevTools endpoint"),
    mode: str = typer.Option(None, "--mode", help="auto, aria or role"),
    efficient: bool = typer.Option(False, "--efficient", help="Interactive + compact + depth 6"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Only interactive elements"),
):
    """Take one accessibility snapshot of a live Chrome tab."""
    from gatebot.browser.cdp import CDPDriver
    from gatebot.browser.refs import BrowserTarget, RefCache
    from gatebot.browser.snapshot import SnapshotBuilder, SnapshotOptions
    from gatebot.config.loader import load_config
    from gatebot.errors import ToolError

    config = load_config()
    browser_cfg = config.tools.browser
    driver = CDPDriver(endpoint or browser_cfg.endpoint, timeout=browser_cfg.timeout_s)
    builder = SnapshotBuilder(driver, RefCache())

    overrides = {"mode": mode or browser_cfg.default_mode, "max_chars": browser_cfg.snapshot_max_chars}
    if interactive:
        overrides["interactive"] = True
    options = SnapshotOptions.efficient(**overrides) if efficient else SnapshotOptions(**overrides)

    async def run() -> None:
        tab_id = target_id
        if not tab_id:
            tabs = await driver.list_tabs()
            if not tabs:
                console.print("[yellow]No open tabs[/yellow]")
                raise typer.Exit(1)
            tab_id = tabs[0].target_id
        snap = await builder.snapshot(BrowserTarget(driver.endpoint, tab_id), options)
        console.print(
            f"[dim]{tab_id}: {snap.mode} refs, {snap.stats.rendered_refs}/{snap.stats.refs} shown"
            f"{', truncated' if snap.truncated else ''}[/dim]"
        )
        console.print(snap.text, markup=False, highlight=False)

    try:
        asyncio.run(run())
    except ToolError as e:
        console.print(f"[red]{e.render()}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
