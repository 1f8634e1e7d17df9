"""Shared fixtures and test doubles for the campaign mailer tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import aiosqlite
import pytest
import pytest_asyncio

from campaign_mailer import encryption
from campaign_mailer.campaigns import create_campaign
from campaign_mailer.models import CampaignCreate
from campaign_mailer.persistence import Persistence
from campaign_mailer.transport import SendResult

SECRET = "unit-test-server-secret"
NOW = 1_700_000_000


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Keep PBKDF2 cheap; the stored format does not depend on the count."""
    monkeypatch.setattr(encryption, "PBKDF2_ITERATIONS", 1_000)


class DummyTransport:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.results: List[Any] = []

    async def send(self, to, subject, text, html, config, attachments=()):
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "text": text,
                "html": html,
                "config": dict(config),
                "attachments": list(attachments),
            }
        )
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult.ok("<message@test>")


class DummyContinuation:
    def __init__(self):
        self.submitted: List[Any] = []

    def submit(self, trigger, runner):
        self.submitted.append(trigger)

    async def drain(self):
        return None

    async def aclose(self):
        return None


class DummyLookup:
    def __init__(self, company=None):
        self.company = company
        self.calls: List[str] = []

    async def lookup(self, address):
        self.calls.append(address)
        if isinstance(self.company, Exception):
            raise self.company
        return self.company

    async def close(self):
        return None


def campaign_payload(recipients, /, **overrides) -> CampaignCreate:
    data = {
        "recipients": recipients,
        "subject": "Hello",
        "body": "Plain body",
        "smtpSettings": {
            "host": "smtp.example.com",
            "port": 587,
            "user": "sender@example.com",
            "pass": "smtp-password",
            "secure": False,
            "fromName": "Sender",
        },
    }
    data.update(overrides)
    return CampaignCreate.model_validate(data)


async def seed_campaign(persistence, recipients, *, now=NOW, owner_id=None, **overrides):
    payload = campaign_payload(recipients, **overrides)
    return await create_campaign(persistence, owner_id, payload, SECRET, now)


async def execute_sql(db_path, sql, params=()):
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(sql, params)
        await db.commit()
        return cursor.rowcount


async def snapshot(db_path):
    """All rows of the mutable tables, for no-write assertions."""
    async with aiosqlite.connect(db_path) as db:
        rows = {}
        for table in ("email_jobs", "campaigns", "clicks"):
            async with db.execute(f"SELECT * FROM {table} ORDER BY 1") as cur:
                rows[table] = await cur.fetchall()
        return rows


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "campaigns.db"))
    await p.init_db()
    return p


def run_sync(coro):
    """Run a coroutine from a synchronous test (e.g. alongside TestClient)."""
    return asyncio.run(coro)
