from datetime import timedelta

import pytest

from studyroom.cli import find_blank_documents, is_blank_document, parse_args, run
from studyroom.models.base import utcnow
from studyroom.models.document import Document
from studyroom.services.page_store import PageStats, PageStore

from conftest import make_pdf


def test_blank_document_rules(settings):
    assert is_blank_document(PageStats(2, 200_000, [2], []), settings)
    assert is_blank_document(PageStats(4, 4 * 20_000, [], []), settings)
    assert not is_blank_document(PageStats(2, 200_000, [], []), settings)
    assert not is_blank_document(PageStats(0, 0, [], []), settings)


def test_parse_args():
    args = parse_args(["reconvert", "--all-blank"])
    assert args.command == "reconvert" and args.all_blank

    args = parse_args(["fail-stale", "--minutes", "15"])
    assert args.minutes == 15

    with pytest.raises(SystemExit):
        parse_args(["reconvert", "doc-1", "--all-blank"])


@pytest.fixture
async def blank_document(database, create_document):
    doc = await create_document(data=make_pdf(2))
    async with database.session() as session:
        store = PageStore(session)
        for n in (1, 2):
            await store.upsert_page(
                doc.id, n,
                page_url=f"user-1/{doc.id}/page-{n}.jpg",
                file_size=4096,
                format="jpg",
                cache_expires_at=utcnow() + timedelta(days=7),
            )
        row = await session.get(Document, doc.id)
        row.processed = True
        row.page_count = 2
    return doc


async def test_blank_report_and_reconvert(database, settings, flags, blank_document, capsys):
    found = await find_blank_documents(database, settings)
    assert [d.document_id for d in found] == [blank_document.id]

    assert await run(parse_args(["blank-report"]), settings, flags) == 0
    assert blank_document.id in capsys.readouterr().out

    assert await run(parse_args(["reconvert", "--all-blank"]), settings, flags) == 0
    assert "avg 4.0 KB" in capsys.readouterr().out

    assert await find_blank_documents(database, settings) == []


async def test_maintenance_commands(settings, flags, capsys):
    assert await run(parse_args(["cleanup-jobs", "--days", "3"]), settings, flags) == 0
    assert "Removed 0 job(s)" in capsys.readouterr().out

    assert await run(parse_args(["fail-stale"]), settings, flags) == 0
    assert "0 stale job(s) failed." in capsys.readouterr().out
