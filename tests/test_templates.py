import pytest

from delivery_queue.errors import TemplateResolutionError
from delivery_queue.queue_db import QueueDb
from delivery_queue.templates import DbTemplateResolver, check_sources, placeholders, render


def test_render_substitutes_plain_and_dotted_names():
    source = "Dear {{ name }}, your badge for {{park.name}} expires on {{expiry}}."
    variables = {"name": "Ada", "park": {"name": "Stelvio"}, "expiry": "2026-03-01"}

    assert render(source, variables) == "Dear Ada, your badge for Stelvio expires on 2026-03-01."


def test_render_escapes_only_when_asked():
    variables = {"note": "<b>& more</b>"}

    assert render("{{note}}", variables) == "<b>& more</b>"
    assert render("{{note}}", variables, escape=True) == "&lt;b&gt;&amp; more&lt;/b&gt;"


def test_render_keeps_non_string_values():
    assert render("{{count}} passes, paid={{paid}}", {"count": 3, "paid": False}) == "3 passes, paid=False"


@pytest.mark.parametrize(
    "variables",
    [{}, {"name": None}, {"park": "flat"}, {"park": {}}],
)
def test_render_missing_value_raises(variables):
    with pytest.raises(KeyError):
        render("{{name}} {{park.name}}", variables)


async def make_db(tmp_path) -> QueueDb:
    db = QueueDb(str(tmp_path / "templates.db"))
    await db.init_db()
    return db


@pytest.mark.asyncio
async def test_resolver_renders_all_parts(tmp_path):
    db = await make_db(tmp_path)
    template_id = await db.templates.add(
        {"name": "notice", "subject": "Notice for {{name}}", "html": "<p>{{body}}</p>", "text": None},
        created_ts=0,
    )

    content = await DbTemplateResolver(db).resolve(template_id, {"name": "Ada", "body": "a < b"})

    assert content.subject == "Notice for Ada"
    assert content.html == "<p>a &lt; b</p>"
    assert content.text is None


@pytest.mark.asyncio
async def test_resolver_rejects_unknown_and_inactive(tmp_path):
    db = await make_db(tmp_path)
    inactive = await db.templates.add({"name": "old", "subject": "Old", "text": "x", "active": False}, created_ts=0)
    resolver = DbTemplateResolver(db)

    with pytest.raises(TemplateResolutionError) as excinfo:
        await resolver.resolve(404, {})
    assert excinfo.value.template_id == 404
    assert excinfo.value.message == "template 404 not found"

    with pytest.raises(TemplateResolutionError):
        await resolver.resolve(inactive, {})


@pytest.mark.asyncio
async def test_resolver_reports_missing_placeholder(tmp_path):
    db = await make_db(tmp_path)
    template_id = await db.templates.add({"name": "t", "subject": "Hi", "text": "Park {{park.name}}"}, created_ts=0)

    with pytest.raises(TemplateResolutionError, match="missing value for placeholder 'park.name'"):
        await DbTemplateResolver(db).resolve(template_id, {"park": {}})


def test_placeholders_in_order_of_first_use():
    assert placeholders("{{b}} {{ a }} {{b}} {{park.name}}") == ["b", "a", "park.name"]


def test_check_sources_reports_malformed_and_missing():
    result = check_sources({"subject": "Hi {{name}}", "html": None, "text": "{{ expiry"}, {"name": "Ada"})

    assert result.valid is False
    assert result.placeholders == ["name"]
    assert result.missing == []
    assert result.errors == ["text: malformed placeholder"]

    assert check_sources({"subject": "Hi {{name}}"}).valid is True
    assert check_sources({"subject": "Hi {{name}}"}, {}).missing == ["name"]
