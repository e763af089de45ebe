from core.telemetry import PerfAcceptance, PerfTelemetry, percentile


def test_percentile():
    assert percentile([], 0.5) == 0
    assert percentile([5, 1, 3], 0.5) == 3
    assert percentile([1, 2, 3, 4], 0.5) == 2


def test_snapshot_and_dropped_frames():
    t = PerfTelemetry()
    for ms in (16, 16, 40, 16):
        t.report_frame_time(ms)
    t.report_frame_time(-1)
    for fps in (30, 28, 31):
        t.report_overlay_fps(fps)
    t.report_fast_rtt(400)
    t.report_depth_rtt(2500)
    snap = t.snapshot()
    assert snap.dropped_frame_ratio == 0.25
    assert snap.overlay_fps == 30
    assert snap.fast_rtt_p50 == 400 and snap.depth_rtt_p50 == 2500


def test_evaluate_against_acceptance():
    t = PerfTelemetry()
    t.report_overlay_fps(30)
    t.report_fast_rtt(400)
    t.report_depth_rtt(2500)
    t.report_frame_time(16)
    result = t.evaluate()
    assert result.ok

    t.report_fast_rtt(900)
    t.report_fast_rtt(900)
    result = t.evaluate()
    assert result.passes["fast_rtt"] is False
    assert not result.ok

    strict = t.evaluate(PerfAcceptance(overlay_fps_min=60))
    assert strict.passes["overlay_fps"] is False


def test_windows_are_capped():
    t = PerfTelemetry()
    for i in range(500):
        t.report_fast_rtt(i + 1)
        t.report_depth_rtt(i + 1)
    assert len(t.fast_rtts) == 240
    assert len(t.depth_rtts) == 120
