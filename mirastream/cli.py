import click


@click.group()
def main() -> None:
    """Mirastream - sequenced event streaming for conversational sessions."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from MIRA_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from MIRA_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the stream runtime server."""
    import uvicorn

    from mirastream.stream_runtime.settings import MiraSettings

    settings = MiraSettings()

    uvicorn.run(
        "mirastream.stream_runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 10,
    )


@main.command()
@click.argument("session_id")
@click.argument("message")
@click.option("--url", default="http://localhost:8000", help="Stream runtime base URL.")
@click.option("--confidence", default=50, type=click.IntRange(0, 100), help="Starting confidence.")
@click.option(
    "--speed", default=40, type=click.IntRange(0, 1000), help="Reveal speed in characters per second (0: instant)."
)
def listen(session_id: str, message: str, url: str, confidence: int, speed: int) -> None:
    """Send MESSAGE on SESSION_ID and print the streamed response."""
    import asyncio

    from mirastream.client.session import StreamCallbacks, StreamingSession
    from mirastream.stream_runtime.log import setup_logging
    from mirastream.stream_runtime.models.state import ConversationState
    from mirastream.stream_runtime.settings import MiraSettings

    setup_logging(MiraSettings().log_level)

    async def _run() -> int:
        failed = False

        def on_error(text: str) -> None:
            nonlocal failed
            failed = True
            click.secho(text, fg="red", err=True)

        async with StreamingSession(
            url,
            session_id,
            StreamCallbacks(
                on_text=lambda _sid, chunk: click.echo(chunk, nl=False),
                on_confidence=lambda value: click.secho(f"\n[confidence] {value}", fg="cyan", err=True),
                on_error=on_error,
            ),
            state=ConversationState(confidence_in_user=confidence),
            reveal_chars=1 if speed else 0,
            reveal_interval=1 / speed if speed else 0.0,
        ) as session:
            await session.send(message)
            await session.wait()
            click.echo()
            click.echo(f"mood={session.state.current_mood} confidence={session.state.confidence_in_user}")
        return 1 if failed else 0

    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
