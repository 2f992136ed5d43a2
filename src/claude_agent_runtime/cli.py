"""Command-line entry point.

Usage:
    claude-agent-runtime query "What is 2 + 2?"
    claude-agent-runtime query "Refactor foo.py" --model claude-sonnet-4-5 --cwd ./project
    claude-agent-runtime query "..." --format json    # One decoded message per line
    claude-agent-runtime -v query "..."               # Debug logging to stderr
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from .client import query
from .config import AgentOptions
from .errors import ClaudeSDKError
from .protocol.parser import encode_message
from .types import AssistantMessage, PermissionMode, ResultMessage, TextBlock

FORMAT_TEXT = "text"
FORMAT_JSON = "json"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging on stderr")
def main(verbose: bool) -> None:
    """Run prompts against the Claude CLI over its control protocol."""
    # stdout carries results; logs go to stderr
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command("query")
@click.argument("prompt")
@click.option("--model", help="Model to use")
@click.option("--cwd", type=click.Path(exists=True, file_okay=False), help="Working directory")
@click.option(
    "--permission-mode",
    type=click.Choice([mode.value for mode in PermissionMode]),
    help="Permission mode for tool use",
)
@click.option("--max-turns", type=int, help="Maximum number of agent turns")
@click.option("--system-prompt", help="Replace the system prompt")
@click.option("--cli-path", help="Path to the claude executable")
@click.option(
    "--format",
    "output_format",
    type=click.Choice([FORMAT_TEXT, FORMAT_JSON]),
    default=FORMAT_TEXT,
    help="Output format",
)
def query_command(
    prompt: str,
    model: str | None,
    cwd: str | None,
    permission_mode: str | None,
    max_turns: int | None,
    system_prompt: str | None,
    cli_path: str | None,
    output_format: str,
) -> None:
    """Send PROMPT and print the reply."""
    options = AgentOptions(
        model=model,
        cwd=cwd,
        permission_mode=permission_mode,
        max_turns=max_turns,
        system_prompt=system_prompt,
        cli_path=cli_path,
    )

    try:
        asyncio.run(_run_query(prompt, options, output_format))
    except ClaudeSDKError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)


async def _run_query(prompt: str, options: AgentOptions, output_format: str) -> None:
    async for message in query(prompt, options):
        if output_format == FORMAT_JSON:
            click.echo(json.dumps(encode_message(message)))
            continue

        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    click.echo(block.text)
        elif isinstance(message, ResultMessage):
            if message.is_error:
                click.echo(f"Error: {message.result or message.subtype}", err=True)
            if message.total_cost_usd is not None:
                click.echo(f"Cost: ${message.total_cost_usd:.4f}", err=True)


if __name__ == "__main__":
    main()
