from typing import Optional
import httpx
from rich.console import Console
from clipdrop.config.settings import config
from clipdrop.core.state import state

console = Console()


def _build_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(config.tiktok.timeout_seconds),
        headers={"User-Agent": config.tiktok.user_agent},
        transport=transport,
    )


async def init_http_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Create the shared keep-alive client"""
    if state.http_client is not None:
        await state.http_client.aclose()
    state.http_client = _build_client(transport)
    console.print("[green]✓ HTTP client ready[/green]")
    return state.http_client


def get_http_client() -> httpx.AsyncClient:
    """Get the shared client, created on first use outside the app lifespan"""
    if state.http_client is None:
        state.http_client = _build_client()
    return state.http_client


async def close_http_client() -> None:
    """Close the shared client"""
    if state.http_client is not None:
        await state.http_client.aclose()
        state.http_client = None
        console.print("[dim]✓ HTTP client closed[/dim]")
