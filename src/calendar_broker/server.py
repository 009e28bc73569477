"""Calendar broker server: wires config, accounts, registry and MCP tools.

Startup sequence:
1. Configure structured logging
2. Build one Google client per configured account (shared httpx client)
3. Create the calendar registry and the multi-account router
4. Create FastMCP and register the calendar tools
5. Serve over stdio, or over SSE / streamable HTTP with uvicorn

Shutdown closes the shared HTTP client; per-account clients never own it.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx
import uvicorn
from fastmcp import FastMCP

from calendar_broker.accounts import load_account_clients
from calendar_broker.client import CalendarClient
from calendar_broker.config import BrokerConfig
from calendar_broker.core.logging import configure_logging
from calendar_broker.registry import CalendarRegistry
from calendar_broker.router import MultiAccountRouter
from calendar_broker.tools import CalendarTools

logger = logging.getLogger(__name__)


class BrokerServer:
    """Owns the account clients, registry and MCP app for one broker process."""

    def __init__(self, config: BrokerConfig) -> None:
        self.config = config
        self.mcp: FastMCP | None = None
        self.registry: CalendarRegistry | None = None
        self.accounts: dict[str, CalendarClient] = {}
        self._http_client: httpx.AsyncClient | None = None
        self._server: uvicorn.Server | None = None

    def build(self, http_client: httpx.AsyncClient | None = None) -> FastMCP:
        """Create clients, registry and the MCP app without serving it."""
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self.config.request_timeout_seconds
        )
        self.accounts = load_account_clients(self.config, http_client=self._http_client)
        self.registry = CalendarRegistry(
            ttl_seconds=self.config.registry.cache_ttl_seconds,
            primary_alias_policy=self.config.registry.primary_alias,
        )
        tools = CalendarTools(self.accounts, self.registry, MultiAccountRouter(self.registry))

        self.mcp = FastMCP(self.config.name)
        tools.register_tools(self.mcp)
        logger.info(
            "Calendar broker %s ready with %d account(s): %s",
            self.config.name,
            len(self.accounts),
            ", ".join(self.accounts),
        )
        return self.mcp

    async def serve(self) -> None:
        if self.mcp is None:
            self.build()
        assert self.mcp is not None

        server_config = self.config.server
        try:
            if server_config.transport == "stdio":
                await self.mcp.run_async(transport="stdio")
                return

            app = self.mcp.http_app(transport=server_config.transport)
            uvicorn_config = uvicorn.Config(
                app,
                host=server_config.host,
                port=server_config.port,
                log_level="info",
                timeout_graceful_shutdown=0,
            )
            self._server = uvicorn.Server(uvicorn_config)
            logger.info(
                "Serving %s on %s:%d (%s)",
                self.config.name,
                server_config.host,
                server_config.port,
                server_config.transport,
            )
            await self._server.serve()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down calendar broker: %s", self.config.name)
        if self._server is not None:
            self._server.should_exit = True
            self._server = None

        for account_id, client in self.accounts.items():
            try:
                await client.shutdown()
            except Exception:
                logger.exception("Error during shutdown of account client: %s", account_id)

        if self.registry is not None:
            self.registry.reset()

        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def run(config: BrokerConfig) -> None:
    """Configure logging and serve until interrupted."""
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        broker_name=config.name,
    )
    asyncio.run(BrokerServer(config).serve())
