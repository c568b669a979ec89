"""CLI entry point for cc-convo."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from . import config

APP_HELP = """
Reconstruct agent conversations from session logs and live chunk streams.

\b
Session logs are stored at:
  ~/.claude/projects/<encoded-workspace>/<session-id>.jsonl
"""

app = typer.Typer(add_completion=False, help=APP_HELP)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Enable debug logging"),
) -> None:
    configure_logging("DEBUG" if verbose else config.LOG_LEVEL)


def _write_output(json_str: str, output: Path | None) -> None:
    if output is None:
        typer.echo(json_str)
    else:
        output.write_text(json_str)
        typer.echo(f"Written to {output}", err=True)


TRANSCRIPT_HELP = """
Output the reconstructed conversation of a session log as JSON.

Only the active branch is kept, consecutive assistant entries are merged
into turns, tool results are attached to their calls and subagents are
linked to the Task calls that spawned them. Background subagent side-logs
are read from <session-id>/subagents/ next to the log.

\b
Examples:
  # Conversation overview
  cc-convo transcript session.jsonl | jq '[.messages[] | {role, content: .content[:80]}]'

  # All tool calls with their status
  cc-convo transcript session.jsonl | jq '[.messages[].tool_calls[] | {name, status}]'

  # Conversation as it was before a rewind
  cc-convo transcript session.jsonl --resume-at <entry-uuid>
"""


@app.command(help=TRANSCRIPT_HELP)
def transcript(
    jsonl_path: Path = typer.Argument(..., help="Path to JSONL session log"),
    resume_at: str | None = typer.Option(
        None, "--resume-at", help="Entry id the conversation was rewound to"
    ),
    output: Path | None = typer.Option(None, "-o", "--output", help="Output JSON file path"),
    compact: bool = typer.Option(False, "--compact", help="No indentation (for piping)"),
) -> None:
    from .loader import load_session_messages
    from .renderer import render_json
    from .store import FileSessionStore

    if not jsonl_path.exists():
        typer.echo(f"Error: File not found: {jsonl_path}", err=True)
        raise typer.Exit(1)

    store = FileSessionStore(jsonl_path.parent)
    session_id = jsonl_path.stem
    result = asyncio.run(load_session_messages(store, session_id, resume_at=resume_at))
    if result.error:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(1)

    _write_output(render_json(result, session_id, compact=compact), output)


REPLAY_HELP = """
Feed a recorded chunk stream through the stream aggregator.

Each line of the input is one chunk, e.g.
  {"type": "text", "content": "Hello"}
  {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}}
  {"type": "done"}

The resulting assistant message is printed in the same format as transcript.
"""


@app.command(help=REPLAY_HELP)
def replay(
    chunks_path: Path = typer.Argument(..., help="Path to JSONL chunk recording"),
    session_id: str | None = typer.Option(None, "--session-id", help="Active session id"),
    output: Path | None = typer.Option(None, "-o", "--output", help="Output JSON file path"),
    compact: bool = typer.Option(False, "--compact", help="No indentation (for piping)"),
) -> None:
    from pydantic import ValidationError

    from .merger import parse_timestamp_ms
    from .models import ChatMessage, SessionLoadResult, StreamChunk
    from .renderer import render_json
    from .stream import StreamAggregator

    if not chunks_path.exists():
        typer.echo(f"Error: File not found: {chunks_path}", err=True)
        raise typer.Exit(1)

    message = ChatMessage(
        id=f"replay-{chunks_path.stem}", role="assistant", timestamp=parse_timestamp_ms(None)
    )
    aggregator = StreamAggregator(message, session_id=session_id)
    skipped = 0
    for line in chunks_path.read_text().splitlines():
        if not line.strip():
            continue
        try:
            chunk = StreamChunk.model_validate(json.loads(line))
        except (json.JSONDecodeError, ValidationError):
            skipped += 1
            continue
        aggregator.handle_chunk(chunk)
    aggregator.finish()

    result = SessionLoadResult(messages=[message], skipped_lines=skipped)
    _write_output(render_json(result, session_id, compact=compact), output)


if __name__ == "__main__":
    app()
