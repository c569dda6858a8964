"""
Shared fixtures for unit tests: a small state-style course catalog, source
records, and a scripted matching client.
"""

import asyncio
import json
from typing import Any, Optional

import pytest

from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.models.config import ReconciliationConfig
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex
from course_reconciler.utils.errors import ExternalCallError
from course_reconciler.utils.matching_client import MatchingClient


def make_response(
    matches: Optional[list[Any]] = None,
    unmatched: Optional[list[Any]] = None,
    errors: Optional[list[Any]] = None,
) -> str:
    """Serialize a matching response document."""
    return json.dumps(
        {
            "matches": matches or [],
            "unmatched": unmatched or [],
            "errors": errors or [],
        }
    )


class ScriptedMatchingClient(MatchingClient):
    """Matching client that replays scripted responses or failures in order."""

    def __init__(
        self,
        responses: Optional[list[Any]] = None,
        delay: float = 0.0,
        on_call: Any = None,
    ):
        super().__init__(correlation_id="test")
        self.responses = list(responses or [])
        self.delay = delay
        self.on_call = on_call
        self.contexts: list[Any] = []

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def match(self, context):
        self.contexts.append(context)
        if self.on_call is not None:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self.responses.pop(0) if self.responses else make_response()
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def catalog_entries() -> list[CatalogEntry]:
    return [
        CatalogEntry(code="1001310", name="English 1", category="English"),
        CatalogEntry(code="1001340", name="English 2", category="English"),
        CatalogEntry(code="1200310", name="Algebra 1", category="Mathematics"),
        CatalogEntry(code="1200330", name="Algebra 2", category="Mathematics"),
        CatalogEntry(code="2000310", name="Biology 1", category="Science"),
        CatalogEntry(code="2003340", name="Chemistry 1", category="Science"),
        CatalogEntry(code="0708340", name="French 1", category="World Languages"),
    ]


@pytest.fixture
def catalog_index(catalog_entries) -> CatalogIndex:
    return CatalogIndex(catalog_entries)


@pytest.fixture
def config() -> ReconciliationConfig:
    return ReconciliationConfig()


@pytest.fixture
def exact_record() -> SourceRecord:
    return SourceRecord(id="rec-exact", name="English I", raw_code="1001-310")


@pytest.fixture
def prefix_record() -> SourceRecord:
    return SourceRecord(id="rec-prefix", name="Algebra 1 Honors", raw_code="1200310H")


@pytest.fixture
def semantic_records() -> list[SourceRecord]:
    return [
        SourceRecord(id="rec-bio", name="Intro to Biology", description="Cells and genetics"),
        SourceRecord(id="rec-french", name="French Language I", raw_code="FR1"),
        SourceRecord(id="rec-chem", name="General Chemistry", grade_context="Grade 11"),
    ]


@pytest.fixture
def scripted_client_factory():
    return ScriptedMatchingClient


@pytest.fixture
def build_response():
    return make_response


@pytest.fixture
def call_error():
    return ExternalCallError("Service unavailable", error_type="server_error", status_code=503)
