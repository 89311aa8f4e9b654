import asyncio

import pytest

from linkcapture.errors import DuplicateError, ValidationError
from linkcapture.models import LinkPatch
from linkcapture.sharing import (
    SaveFlow,
    SaveFlowStep,
    ShareConsumer,
    ShareReconciler,
    parse_share_uri,
)


class ManualDefer:
    """Collects deferred callbacks so a test decides when the render pass ends."""

    def __init__(self):
        self.pending = []

    def __call__(self, callback):
        self.pending.append(callback)

    def run(self):
        callbacks, self.pending = self.pending, []
        for callback in callbacks:
            callback()


@pytest.fixture
def reconciler():
    return ShareReconciler("linkcapture")


@pytest.fixture
def defer():
    return ManualDefer()


class TestParseShareUri:

    def test_encoded_url(self):
        uri = "linkcapture://share?url=https%3A%2F%2Fexample.com%2Fa%3Fb%3D1"
        assert parse_share_uri(uri, "linkcapture") == "https://example.com/a?b=1"

    def test_other_scheme_or_host(self):
        assert parse_share_uri("otherapp://share?url=https%3A%2F%2Fexample.com", "linkcapture") is None
        assert parse_share_uri("linkcapture://open?url=https%3A%2F%2Fexample.com", "linkcapture") is None

    def test_missing_or_invalid_url(self):
        assert parse_share_uri("linkcapture://share", "linkcapture") is None
        assert parse_share_uri("linkcapture://share?url=hello", "linkcapture") is None


class TestReconciler:

    def test_cold_start_delivers_exactly_once(self, reconciler, defer):
        opened = []
        assert reconciler.receive_text("Check this out https://example.com/a")

        consumer = ShareConsumer(reconciler, opened.append, defer=defer)
        consumer.attach()
        assert opened == []
        defer.run()
        assert opened == ["https://example.com/a"]
        assert reconciler.pending is None

        # screen rebuilt
        consumer.detach()
        rebuilt = ShareConsumer(reconciler, opened.append, defer=defer)
        rebuilt.attach()
        defer.run()
        assert opened == ["https://example.com/a"]

    def test_share_racing_the_first_delivery(self, reconciler, defer):
        opened = []
        reconciler.receive_text("https://example.com/first")
        consumer = ShareConsumer(reconciler, opened.append, defer=defer)
        consumer.attach()
        reconciler.receive_text("https://example.com/second")

        assert len(defer.pending) == 2
        defer.run()
        assert opened == ["https://example.com/second"]

    def test_warm_start_deep_link(self, reconciler, defer):
        opened = []
        ShareConsumer(reconciler, opened.append, defer=defer).attach()

        assert reconciler.receive_uri("linkcapture://share?url=https%3A%2F%2Fexample.com%2Fb")
        defer.run()
        assert opened == ["https://example.com/b"]

    def test_last_share_wins(self, reconciler, defer):
        opened = []
        reconciler.receive_text("https://example.com/one")
        reconciler.receive_uri("linkcapture://share?url=https%3A%2F%2Fexample.com%2Ftwo")

        ShareConsumer(reconciler, opened.append, defer=defer).attach()
        defer.run()
        assert opened == ["https://example.com/two"]

    def test_rejected_payloads_keep_pending_share(self, reconciler):
        reconciler.receive_text("https://example.com/keep")
        assert not reconciler.receive_text("no link in here")
        assert not reconciler.receive_uri("evil://share?url=https%3A%2F%2Fx.com")
        assert reconciler.pending.url == "https://example.com/keep"

    def test_attach_is_idempotent(self, reconciler, defer):
        opened = []
        consumer = ShareConsumer(reconciler, opened.append, defer=defer)
        consumer.attach()
        consumer.attach()
        reconciler.receive_text("https://example.com/x")
        assert len(defer.pending) == 1

    def test_detached_consumer_is_not_notified(self, reconciler, defer):
        consumer = ShareConsumer(reconciler, lambda url: None, defer=defer)
        consumer.attach()
        consumer.detach()
        reconciler.receive_text("https://example.com/x")
        assert defer.pending == []
        assert reconciler.pending is not None

    @pytest.mark.asyncio
    async def test_default_defer_uses_event_loop(self, reconciler):
        opened = []
        reconciler.receive_text("https://example.com/loop")
        ShareConsumer(reconciler, opened.append).attach()
        assert opened == []
        await asyncio.sleep(0)
        assert opened == ["https://example.com/loop"]


class TestSaveFlow:

    @pytest.mark.asyncio
    async def test_prefilled_flow_saves_without_input(self, engine, loader, session):
        flow = SaveFlow(engine, session)
        assert await flow.start("https://example.com/shared") == SaveFlowStep.SUCCESS
        assert flow.prefilled
        assert flow.saved.normalized_url == "https://example.com/shared"
        assert loader.view.ids == [flow.saved.id]

    @pytest.mark.asyncio
    async def test_manual_flow_waits_for_submit(self, engine, session):
        flow = SaveFlow(engine, session)
        assert await flow.start() == SaveFlowStep.URL_INPUT

        flow.update_url("example.com/typed")
        assert await flow.submit() == SaveFlowStep.SUCCESS
        assert flow.saved.url == "https://example.com/typed"

    @pytest.mark.asyncio
    async def test_invalid_url_stays_local(self, store, engine, session):
        flow = SaveFlow(engine, session)
        flow.update_url("   ")
        assert await flow.submit() == SaveFlowStep.ERROR
        assert isinstance(flow.error, ValidationError)
        assert store.calls == []

        flow.update_url("https://example.com")
        assert flow.step == SaveFlowStep.URL_INPUT
        assert flow.error is None

    @pytest.mark.asyncio
    async def test_duplicate_share(self, engine, loader, session):
        await engine.create(session, "https://example.com/a")
        flow = SaveFlow(engine, session)

        assert await flow.start("https://www.example.com/a/") == SaveFlowStep.ERROR
        assert isinstance(flow.error, DuplicateError)
        assert flow.to_dict()["error"] == "You've already saved this link"

    @pytest.mark.asyncio
    async def test_add_details_after_save(self, store, engine, loader, session):
        tag = store.add_tag(session.owner_id, "later")
        flow = SaveFlow(engine, session)
        await flow.start("https://example.com/a")

        flow.add_details()
        assert flow.step == SaveFlowStep.ADDING_DETAILS
        assert await flow.save_details(LinkPatch(note="for the weekend", tag_ids=[tag.id])) == SaveFlowStep.SUCCESS

        assert flow.saved.note == "for the weekend"
        assert loader.items[0].tag_ids == [tag.id]
