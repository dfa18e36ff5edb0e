# tests/test_region.py
import threading
from datetime import timedelta

import pytest

from estatemetrics.errors import InvalidDataset, RegionNotFound, UpstreamFetchFailure
from estatemetrics.region import REGISTERED_INDEXES, RegionState, index_names
from estatemetrics.utils import timestamp, utcnow

from conftest import region_options


class CountingExport:
    def __init__(self):
        self.calls = 0

    def sync(self):
        self.calls += 1
        return {}


def set_last_ran(pipeline, region_id, moment):
    record = pipeline.region_config(region_id)
    pipeline.store.upsert(REGISTERED_INDEXES, {"records": [{**record, "lastRan": timestamp(moment)}]})


def test_index_names():
    names = index_names("austin")
    assert names["combined_rentals"] == "austin_rentals"
    assert names["combined_properties"] == "austin_properties"
    assert names["rental_report"] == "austin_rentals_report"
    assert names["redfin_rentals"] == "austin_rentals_redfin"
    assert names["zillow_properties"] == "austin_properties_zillow"


def test_register_region(pipeline):
    record = pipeline.update_regions_index("austin", region_options())

    assert record["region"] == "austin"
    assert record["redfin"]["rentals"]["url"].endswith("/redfin")
    assert record["redfin"]["properties"]["url"].endswith("/redfin")
    assert "austin_properties" in record["relatedIndexes"]
    assert record["lastRan"] is None
    assert pipeline.region_config("austin")["id"] == record["id"]
    assert [r["region"] for r in pipeline.registered_regions()] == ["austin"]


def test_register_keeps_last_ran(pipeline):
    pipeline.update_regions_index("austin", region_options())
    set_last_ran(pipeline, "austin", utcnow())
    before = pipeline.region_config("austin")["lastRan"]
    pipeline.update_regions_index("austin", region_options("https://example.com/v2"))
    after = pipeline.region_config("austin")
    assert after["lastRan"] == before
    assert after["zillow"]["rentals"]["url"] == "https://example.com/v2/zillow"


@pytest.mark.parametrize("region_id, options", [
    ("austin", {"redfin": {"url": "https://example.com"}}),
    ("austin", {"redfin": {"cookies": "x"}, "zillow": {"url": "https://example.com"}}),
    ("Austin TX", region_options()),
])
def test_register_rejects_bad_input(pipeline, region_id, options):
    with pytest.raises(InvalidDataset):
        pipeline.update_regions_index(region_id, options)


def test_unknown_region(pipeline):
    with pytest.raises(RegionNotFound):
        pipeline.region_config("nowhere")
    with pytest.raises(RegionNotFound):
        pipeline.fetch_region("nowhere", force=True)


def test_should_run_respects_staleness(pipeline):
    pipeline.update_regions_index("austin", region_options())
    assert pipeline.should_run("austin")

    now = utcnow()
    set_last_ran(pipeline, "austin", now - timedelta(hours=1))
    assert not pipeline.should_run("austin", now=now)

    set_last_ran(pipeline, "austin", now - timedelta(hours=25))
    assert pipeline.should_run("austin", now=now)


def test_dev_mode_always_runs(pipeline):
    pipeline.update_regions_index("austin", region_options())
    set_last_ran(pipeline, "austin", utcnow())
    pipeline.dev_mode = True
    assert pipeline.should_run("austin")


def test_fetch_region_persists_every_artifact(pipeline, feed):
    pipeline.update_regions_index("austin", region_options())

    decorated = pipeline.fetch_region("austin")

    assert len(feed.calls) == 4
    assert {p["address"] for p in decorated} == {"12 Cedar Ln, Austin, TX", "14 Cedar Ln, Austin, TX"}
    store = pipeline.store
    for name in index_names("austin").values():
        assert store.exists(name), name

    rentals = store.get("austin_rentals")["records"]
    assert len(rentals) == 7
    assert all(r["mergedRecords"] for r in rentals)
    assert all(r["source"] == "zillow" and r["redfinPrice"] == r["price"] for r in rentals)

    report = store.get("austin_rentals_report")["records"]
    assert {r["key"] for r in report} == {"total", "2"}

    properties = store.get("austin_properties")
    assert {p["reportBucket"] for p in properties["records"]} == {"2"}
    assert properties["meta"]["region"] == "austin"
    assert properties["meta"]["rentalReport"]["buckets"]["2"]["count"] == 6

    raw = store.metadata("austin_rentals_redfin")
    assert raw["source"] == "redfin"
    assert raw["url"].endswith("/redfin")

    assert pipeline.region_config("austin")["lastRan"] is not None
    assert pipeline.states["austin"] is RegionState.IDLE
    assert pipeline.fetch_region("austin") is None
    assert len(feed.calls) == 4


def test_force_bypasses_staleness(pipeline, feed):
    pipeline.update_regions_index("austin", region_options())
    pipeline.fetch_region("austin")
    assert pipeline.fetch_region("austin", force=True) is not None
    assert len(feed.calls) == 8


def test_upstream_failure_leaves_last_ran_untouched(pipeline):
    pipeline.update_regions_index("austin", region_options("https://broken.example.com"))

    with pytest.raises(UpstreamFetchFailure) as info:
        pipeline.fetch_region("austin")

    assert info.value.region == "austin"
    assert pipeline.region_config("austin")["lastRan"] is None
    assert pipeline.states["austin"] is RegionState.FAILED
    assert not pipeline.store.exists("austin_properties")


def test_run_job_continues_past_failures(pipeline):
    pipeline.export = CountingExport()
    pipeline.update_regions_index("austin", region_options())
    pipeline.update_regions_index("boston", region_options("https://broken.example.com"))
    pipeline.update_regions_index("chicago", region_options())
    set_last_ran(pipeline, "chicago", utcnow())

    outcomes = pipeline.run_job()

    assert outcomes == {"austin": "ok", "boston": "failed", "chicago": "skipped"}
    assert pipeline.region_config("austin")["lastRan"] is not None
    assert pipeline.region_config("boston")["lastRan"] is None
    assert pipeline.export.calls == 1


def test_cancelled_job_leaves_regions_unmarked(pipeline):
    pipeline.update_regions_index("austin", region_options())
    pipeline.update_regions_index("boston", region_options())
    cancel = threading.Event()
    cancel.set()

    outcomes = pipeline.run_job(cancel)

    assert outcomes == {"austin": "cancelled", "boston": "cancelled"}
    assert pipeline.region_config("austin")["lastRan"] is None
    assert pipeline.region_config("boston")["lastRan"] is None


def test_cancel_during_delay_stops_job(pipeline):
    pipeline.delay_range = (30, 30)
    pipeline.update_regions_index("austin", region_options())
    pipeline.update_regions_index("boston", region_options())
    cancel = threading.Event()
    fetch = pipeline.fetch_region

    def fetch_then_cancel(region_id, cancel=None, force=False):
        result = fetch(region_id, cancel=cancel, force=force)
        threading.Timer(0.1, cancel.set).start()
        return result

    pipeline.fetch_region = fetch_then_cancel
    outcomes = pipeline.run_job(cancel)

    assert outcomes == {"austin": "ok", "boston": "cancelled"}
    assert pipeline.region_config("boston")["lastRan"] is None


class RecordingEvent(threading.Event):
    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.is_set()


def test_dev_mode_still_waits_between_regions(pipeline):
    pipeline.dev_mode = True
    pipeline.delay_range = (1, 1)
    pipeline.update_regions_index("austin", region_options())
    pipeline.update_regions_index("boston", region_options())
    cancel = RecordingEvent()

    outcomes = pipeline.run_job(cancel)

    assert outcomes == {"austin": "ok", "boston": "ok"}
    assert cancel.waits == [1]
