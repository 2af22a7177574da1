"""
Shared fixtures and test utilities for Regulatory Truth tests.

Provides in-memory stores, a fake model client, and sample gazette documents
so that all tests run without API keys, databases, or network access.
"""

import sys
import threading
from pathlib import Path
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Sample gazette documents
# ---------------------------------------------------------------------------
SAMPLE_GAZETTE_TEXT = """ZAKON O POREZU NA DODANU VRIJEDNOST

I. OPĆE ODREDBE

Članak 1.
Ovim se Zakonom uređuje oporezivanje porezom na dodanu vrijednost.

Članak 2.
(1) Porez na dodanu vrijednost plaća se po stopi od 25%.
(2) Iznimno od stavka 1. ovoga članka, porez se plaća po sniženoj stopi:
a) 13% na usluge smještaja,
b) 5% na kruh i mlijeko.

Članak 3.
(1) Porezni obveznik dužan je podnijeti prijavu do 20. dana u mjesecu.
"""

SAMPLE_GAZETTE_HTML = """<!DOCTYPE html>
<html>
<head><title>NN 73/2013</title><style>p { margin: 0; }</style></head>
<body>
<h1>PRAVILNIK O PAUŠALNOM OPOREZIVANJU</h1>
<!-- uvod -->
<p>Članak 1.</p>
<p>Ovim Pravilnikom propisuje se <b>paušalno</b> oporezivanje&nbsp;obrtnika.</p>
<p>Članak 2.</p>
<p>(1) Godišnji paušalni porez plaća se tromjesečno.</p>
<p>(2) Rok za plaćanje je posljednji dan tromjesečja.</p>
<script>var tracking = "Članak 99.";</script>
</body>
</html>
"""

SAMPLE_MARKDOWN = """# UREDBA O NAKNADAMA

Članak 1.
Naknada se plaća **jednom godišnje**.

Članak 2.
(1) Visina naknade utvrđuje se [prilogom](https://narodne-novine.nn.hr/prilog).
"""

UNSTRUCTURED_TEXT = "Prva rečenica je ovdje. Druga rečenica slijedi. Treća rečenica završava."


# ---------------------------------------------------------------------------
# In-memory pipeline store
# ---------------------------------------------------------------------------

class InMemoryPipelineStore:
    """Thread-safe stand-in for PipelineStore."""

    def __init__(self, source_cards=None):
        self._lock = threading.Lock()
        self.stage_runs = {}      # (stage, run_date) -> PipelineStageRun
        self.agent_runs = {}      # id -> AgentRunRecord
        self.reasoning_events = []
        self.source_cards = list(source_cards or [])
        self.source_queries = []
        self.closed = False
        self.fail_event_writes = False
        self.fail_source_lookup = False

    # Stage runs
    def get_stage_run(self, stage, run_date):
        with self._lock:
            run = self.stage_runs.get((stage, run_date))
            return replace(run) if run else None

    def insert_stage_run_if_absent(self, run):
        with self._lock:
            key = (run.stage, run.run_date)
            if key in self.stage_runs:
                return False
            self.stage_runs[key] = replace(run)
            return True

    def transition_stage_run(self, run_id, to_status, completed_at, summary, errors):
        with self._lock:
            for key, run in self.stage_runs.items():
                if run.id == run_id and run.status == "running":
                    self.stage_runs[key] = replace(
                        run, status=to_status, completed_at=completed_at,
                        summary=dict(summary), errors=list(errors),
                    )
                    return True
        return False

    # Agent runs
    def save_agent_run(self, record):
        self.agent_runs[record.id] = record

    # Reasoning audit trail
    def log_reasoning_events(self, events):
        if self.fail_event_writes:
            raise ConnectionError("audit database unavailable")
        with self._lock:
            self.reasoning_events.extend(events)

    # Source cards
    def find_source_cards(self, keywords, domain=None, limit=20):
        self.source_queries.append((list(keywords), domain, limit))
        if self.fail_source_lookup:
            raise ConnectionError("source index unavailable")
        matches = []
        for card in self.source_cards:
            haystack = f"{card.title} {card.quote}".lower()
            if card.status == "active" and any(k in haystack for k in keywords):
                matches.append(card)
        return matches[:limit]

    def ping(self):
        return True

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Fake model client (OpenAI-compatible shape)
# ---------------------------------------------------------------------------

class MockLLMClient:
    """Returns queued responses from chat.completions.create and records prompts."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.responses.pop(0) if self.responses else ""
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


# ---------------------------------------------------------------------------
# Controllable clock for the stage coordinator
# ---------------------------------------------------------------------------

class FakeClock:
    """UTC clock that only moves when sleep() is called."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)
        self.sleeps = []
        self.on_sleep = None

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))


RUN_DATE = date(2026, 3, 2)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_gazette_text():
    return SAMPLE_GAZETTE_TEXT


@pytest.fixture
def sample_gazette_html():
    return SAMPLE_GAZETTE_HTML


@pytest.fixture
def parser():
    from execution.regulatory_truth.document_parser import StructuralParser
    return StructuralParser()


@pytest.fixture
def parsed_gazette(parser):
    return parser.parse(SAMPLE_GAZETTE_TEXT, "text")


@pytest.fixture
def source_cards():
    from execution.regulatory_truth.citation import SourceCard
    return [
        SourceCard(
            id="guid-pdv-stope",
            authority="GUIDANCE",
            confidence=0.8,
            effective_from="2025-01-15",
            title="Uputa Porezne uprave o stopama PDV-a",
            reference="t. 2",
            quote="Opća stopa PDV-a iznosi 25%.",
        ),
        SourceCard(
            id="law-pdv-38",
            authority="LAW",
            confidence=0.95,
            effective_from="2024-01-01",
            title="Zakon o PDV-u",
            reference="čl. 38, st. 1",
            quote="Porez na dodanu vrijednost plaća se po stopi od 25%.",
            url="https://narodne-novine.nn.hr/clanci/sluzbeni/2013_06_73_1451.html",
        ),
        SourceCard(
            id="old-pdv-memo",
            authority="PRACTICE",
            confidence=0.1,
            title="Stari dopis o PDV-u",
            quote="Stopa PDV-a nekad je bila 23%.",
        ),
    ]


@pytest.fixture
def memory_store(source_cards):
    return InMemoryPipelineStore(source_cards=source_cards)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def registry():
    from execution.regulatory_truth.prompt_registry import PromptRegistry
    return PromptRegistry.default()


@pytest.fixture
def recorder(registry, memory_store):
    from execution.regulatory_truth.prompt_registry import AgentRunRecorder
    return AgentRunRecorder(registry, memory_store)
