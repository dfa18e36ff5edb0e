# tests/test_scheduler.py
from estatemetrics.scheduler import JOB_ID, RegionScheduler


class RecordingPipeline:
    def __init__(self):
        self.cancels = []

    def run_job(self, cancel=None):
        self.cancels.append(cancel)
        return {}


def test_daily_job_at_configured_hour():
    scheduler = RegionScheduler(RecordingPipeline(), hour=6, minute=15)
    job = scheduler._scheduler.get_job(JOB_ID)
    assert job is not None
    fields = {f.name: str(f) for f in job.trigger.fields}
    assert fields["hour"] == "6"
    assert fields["minute"] == "15"


def test_random_minute_is_in_range():
    scheduler = RegionScheduler(RecordingPipeline())
    assert 0 <= scheduler.minute <= 59


def test_run_passes_stop_event_as_cancel():
    pipeline = RecordingPipeline()
    scheduler = RegionScheduler(pipeline, minute=0)
    scheduler.run()
    assert pipeline.cancels == [scheduler.stop_event]


def test_start_and_shutdown():
    scheduler = RegionScheduler(RecordingPipeline(), minute=0)
    scheduler.start()
    try:
        assert scheduler.running
        scheduler.start()
    finally:
        scheduler.shutdown()
    assert not scheduler.running
    assert scheduler.stop_event.is_set()
