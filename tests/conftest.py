"""Shared pytest fixtures for cap-mcp tests.

The bookshop model covers every annotation kind: a fully wrapped entity
with an omitted, a computed and a foreign-key field, a restricted entity,
a static resource, bound and unbound operations, elicitation and prompts.
"""

from __future__ import annotations

import copy
from typing import Any
from unittest.mock import AsyncMock

import pytest

from cap_mcp.annotations import parse_definitions
from cap_mcp.auth import PRIVILEGED_USER, User
from cap_mcp.config import McpConfig, reset_config
from cap_mcp.mcp.registry import InvocationContext, McpRegistry
from cap_mcp.model import CsnModel
from cap_mcp.runtime import AppRuntime
from cap_mcp.store import SqliteService

BOOKSHOP_CSN: dict[str, Any] = {
    "definitions": {
        "CatalogService": {
            "kind": "service",
            "@mcp.prompts": [
                {
                    "name": "summarize_book",
                    "title": "Summarize a book",
                    "description": "Short summary of a book for an audience",
                    "template": "Summarize the book {{title}} for a {{audience}} audience",
                    "role": "user",
                    "inputs": [
                        {"key": "title", "type": "String"},
                        {"key": "audience", "type": "String"},
                    ],
                }
            ],
        },
        "CatalogService.Books": {
            "kind": "entity",
            "@mcp.name": "books",
            "@mcp.description": "Book catalog",
            "@mcp.resource": ["filter", "orderby", "select", "top", "skip"],
            "@mcp.wrap.tools": True,
            "@mcp.wrap.modes": ["query", "get", "create", "update", "delete"],
            "@mcp.wrap.hint.query": "Use for listing books",
            "elements": {
                "ID": {"key": True, "type": "cds.Integer"},
                "title": {"type": "cds.String", "@mcp.hint": "The book title"},
                "stock": {"type": "cds.Integer"},
                "price": {"type": "cds.Decimal"},
                "available": {"type": "cds.Boolean"},
                "author": {
                    "type": "cds.Association",
                    "target": "CatalogService.Authors",
                    "keys": [{"ref": ["ID"]}],
                },
                "author_ID": {"type": "cds.Integer", "@odata.foreignKey4": "author"},
                "secret": {"type": "cds.String", "@mcp.omit": True},
                "createdAt": {"type": "cds.Timestamp", "@Core.Computed": True},
            },
            "actions": {
                "restock": {
                    "kind": "action",
                    "@mcp.name": "restock_book",
                    "@mcp.description": "Add stock to a book",
                    "@mcp.tool": True,
                    "params": {"quantity": {"type": "cds.Integer", "@mcp.hint": "Units to add"}},
                }
            },
        },
        "CatalogService.Authors": {
            "kind": "entity",
            "@mcp.name": "authors",
            "@mcp.description": "Book authors",
            "@mcp.resource": True,
            "@mcp.wrap.tools": True,
            "@restrict": [
                {"grant": "READ", "to": "reader"},
                {"grant": "WRITE", "to": "admin"},
            ],
            "elements": {
                "ID": {"key": True, "type": "cds.Integer"},
                "name": {"type": "cds.String"},
            },
        },
        "CatalogService.Genres": {
            "kind": "entity",
            "@mcp.name": "genres",
            "@mcp.description": "Book genres",
            "@mcp.resource": [],
            "elements": {
                "code": {"key": True, "type": "cds.String"},
                "label": {"type": "cds.String"},
            },
        },
        "CatalogService.getBookCount": {
            "kind": "function",
            "@mcp.name": "get_book_count",
            "@mcp.description": "Count books with at least the given stock",
            "@mcp.tool": True,
            "params": {"minStock": {"type": "cds.Integer"}},
            "returns": {"type": "cds.Integer"},
        },
        "CatalogService.submitOrder": {
            "kind": "action",
            "@mcp.name": "submit_order",
            "@mcp.description": "Order copies of a book",
            "@mcp.tool": True,
            "@mcp.elicit": ["input", "confirm"],
            "@requires": "customer",
            "params": {
                "book": {"type": "cds.Integer"},
                "quantity": {"type": "cds.Integer"},
            },
        },
    }
}

SEED_DATA: dict[str, list[dict[str, Any]]] = {
    "CatalogService.Authors": [
        {"ID": 101, "name": "Emily Bronte"},
        {"ID": 107, "name": "Charlotte Bronte"},
    ],
    "CatalogService.Books": [
        {"ID": 201, "title": "Wuthering Heights", "stock": 12, "price": 11.11, "available": True,
         "author_ID": 101, "secret": "s-201"},
        {"ID": 207, "title": "Jane Eyre", "stock": 11, "price": 12.34, "available": True,
         "author_ID": 107, "secret": "s-207"},
        {"ID": 251, "title": "The Raven", "stock": 333, "price": 13.13, "available": False,
         "author_ID": 107, "secret": "s-251"},
    ],
    "CatalogService.Genres": [
        {"code": "FIC", "label": "Fiction"},
        {"code": "POE", "label": "Poetry"},
    ],
}

READER = User(id="alice", roles=frozenset({"reader"}))
ADMIN = User(id="bob", roles=frozenset({"reader", "admin", "customer"}))


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the process-wide configuration isolated between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def bookshop_csn() -> dict[str, Any]:
    return copy.deepcopy(BOOKSHOP_CSN)


@pytest.fixture
def model(bookshop_csn) -> CsnModel:
    return CsnModel(bookshop_csn)


@pytest.fixture
def annotations(model):
    return parse_definitions(model)


@pytest.fixture
def catalog_service(model) -> SqliteService:
    """Seeded in-memory CatalogService with operation handlers."""
    service = SqliteService("CatalogService", model)
    service.seed(copy.deepcopy(SEED_DATA))

    async def restock(req):
        book = req.service.conn.execute(
            'SELECT stock FROM "CatalogService_Books" WHERE "ID" = ?', (req.keys["ID"],)
        ).fetchone()
        new_stock = book["stock"] + req.data["quantity"]
        req.service.conn.execute(
            'UPDATE "CatalogService_Books" SET "stock" = ? WHERE "ID" = ?', (new_stock, req.keys["ID"])
        )
        req.service.conn.commit()
        return {"ID": req.keys["ID"], "stock": new_stock}

    async def book_count(req):
        row = req.service.conn.execute(
            'SELECT count(1) AS n FROM "CatalogService_Books" WHERE "stock" >= ?', (req.data.get("minStock", 0),)
        ).fetchone()
        return row["n"]

    async def submit_order(req):
        return {"book": req.data["book"], "quantity": req.data["quantity"], "status": "submitted"}

    service.on("restock", restock, entity="Books")
    service.on("getBookCount", book_count)
    service.on("submitOrder", submit_order)
    yield service
    service.close()


@pytest.fixture
def runtime(model, catalog_service) -> AppRuntime:
    runtime = AppRuntime(model)
    runtime.serve(catalog_service)
    return runtime


@pytest.fixture
def registry() -> McpRegistry:
    return McpRegistry(PRIVILEGED_USER)


@pytest.fixture
def context() -> InvocationContext:
    """Privileged caller whose elicitation round-trips are mocked."""
    return InvocationContext(user=PRIVILEGED_USER, elicit=AsyncMock())


@pytest.fixture
def config() -> McpConfig:
    return McpConfig(
        name="bookshop-mcp",
        version="1.2.3",
        auth="none",
        wrap_entities_to_actions=False,
        wrap_entity_modes=["query", "get"],
        instructions=None,
        json_response=True,
        prompt_strict_placeholders=False,
        elicit_timeout_seconds=None,
    )


@pytest.fixture
def reader() -> User:
    return READER


@pytest.fixture
def admin() -> User:
    return ADMIN
