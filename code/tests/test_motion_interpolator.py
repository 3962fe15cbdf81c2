import pytest

from MotionInterpolator import DurationPolicy, HeadingSmoother, MotionInterpolator, MotionSample, ZoomFollower
from RouteGeometry import RouteGeometry, angle_delta, bearing_deg
from Scheduler import SimulatedScheduler

ROUTE = [(12.9850, 77.6100), (12.9800, 77.5990), (12.9716, 77.5946)]


def _between(p, a, b, eps=1e-12):
    return (min(a[0], b[0]) - eps <= p[0] <= max(a[0], b[0]) + eps
            and min(a[1], b[1]) - eps <= p[1] <= max(a[1], b[1]) + eps)


def _collinear(p, a, b, eps=1e-12):
    cross = (b[0] - a[0]) * (p[1] - a[1]) - (b[1] - a[1]) * (p[0] - a[0])
    return abs(cross) <= eps


def test_position_never_leaves_the_current_segment():
    route = RouteGeometry.from_points(ROUTE)
    for i in range(201):
        p = i / 200
        idx, frac = route.locate(p)
        a, b = route.segment(idx)
        pos = route.position_at(p)
        assert 0 <= idx < route.segment_count
        assert 0.0 <= frac <= 1.0
        assert _between(pos, a, b)
        assert _collinear(pos, a, b)


def test_progress_outside_unit_range_is_clamped():
    route = RouteGeometry.from_points(ROUTE)
    assert route.position_at(-0.5) == ROUTE[0]
    assert route.position_at(7.0) == pytest.approx(ROUTE[-1])
    assert route.locate(1.0) == (1, 1.0)


def test_empty_route_is_rejected():
    with pytest.raises(ValueError):
        RouteGeometry.from_points([])


def test_bearing_of_zero_length_hop_is_undefined():
    assert bearing_deg((1.0, 1.0), (1.0, 1.0)) is None
    assert bearing_deg((0.0, 0.0), (1.0, 0.0)) == pytest.approx(0.0)
    assert bearing_deg((0.0, 0.0), (0.0, 1.0)) == pytest.approx(90.0)
    assert angle_delta(350.0, 10.0) == pytest.approx(20.0)


def test_stepping_visits_segments_in_order_and_arrives_once():
    sched = SimulatedScheduler()
    samples, arrivals = [], []
    interp = MotionInterpolator(sched, on_sample=samples.append, on_arrived=arrivals.append,
                                tick_interval=0.1)
    route = RouteGeometry.from_points(ROUTE)
    interp.start(route, DurationPolicy.fixed_step(0.125))
    assert interp.is_active()

    sched.advance(5.0)

    segments = [s.segment_index for s in samples]
    assert segments == sorted(segments)
    assert segments[0] == 0 and segments[-1] == 1
    assert [s.progress for s in samples] == [i * 0.125 for i in range(9)]
    assert samples[-1].position == pytest.approx(ROUTE[-1])
    assert arrivals == [route]
    assert not interp.is_active()
    assert sched.pending() == 0


def test_starting_a_new_cycle_cancels_the_old_one():
    sched = SimulatedScheduler()
    arrivals = []
    interp = MotionInterpolator(sched, on_arrived=arrivals.append, tick_interval=0.1)
    first = RouteGeometry.from_points(ROUTE)
    second = RouteGeometry.from_points(list(reversed(ROUTE)))

    interp.start(first, DurationPolicy.fixed_step(0.1))
    sched.advance(0.5)
    interp.start(second, DurationPolicy.fixed_step(0.1))
    assert sched.pending() == 1
    assert interp.progress == 0.0

    sched.advance(5.0)
    assert arrivals == [second]


def test_stop_is_idempotent_and_suppresses_arrival():
    sched = SimulatedScheduler()
    arrivals = []
    interp = MotionInterpolator(sched, on_arrived=arrivals.append, tick_interval=0.1)
    interp.start(RouteGeometry.from_points(ROUTE), DurationPolicy.fixed_step(0.5))
    sched.advance(0.1)
    interp.stop()
    interp.stop()
    sched.advance(5.0)
    assert arrivals == []
    assert not interp.is_active()


def test_single_point_route_holds_position_and_heading():
    sched = SimulatedScheduler()
    samples, arrivals = [], []
    interp = MotionInterpolator(sched, on_sample=samples.append, on_arrived=arrivals.append,
                                tick_interval=0.1)
    route = RouteGeometry.from_points([ROUTE[0]])
    interp.start(route, DurationPolicy.fixed_step(0.25))
    sched.advance(2.0)

    assert {s.position for s in samples} == {ROUTE[0]}
    assert {s.heading for s in samples} == {0.0}
    assert len(arrivals) == 1


def test_heading_takes_the_short_way_across_the_wrap():
    s = HeadingSmoother(alpha=0.1, initial=170.0)
    prev = s.value
    for _ in range(60):
        v = s.update(-170.0)
        assert abs(v - prev) <= 2.0 + 1e-9
        prev = v
    assert s.value == pytest.approx(190.0, abs=0.1)
    assert s.value % 360 == pytest.approx(190.0, abs=0.1)


def test_interpolated_heading_jump_is_bounded_on_a_southward_turn():
    # bearings ~170 then ~-170: the raw value flips sign, the smoothed one must not
    route = RouteGeometry.from_points([(0.0, 0.0), (-1.0, 0.1763), (-2.0, 0.0)])
    sched = SimulatedScheduler()
    samples = []
    alpha = 0.08
    interp = MotionInterpolator(sched, on_sample=samples.append, heading_alpha=alpha, tick_interval=0.1)
    interp.start(route, DurationPolicy.fixed_step(0.02))
    sched.advance(10.0)

    headings = [s.heading for s in samples]
    for a, b in zip(headings, headings[1:]):
        assert abs(b - a) <= alpha * 180.0
    assert all(169.0 < h < 191.0 for h in headings)


def test_max_step_clamps_a_single_update():
    s = HeadingSmoother(alpha=1.0, initial=0.0, max_step_deg=5.0)
    assert s.update(90.0) == 5.0
    assert s.update(None) == 5.0
    with pytest.raises(ValueError):
        HeadingSmoother(alpha=0.0)


def test_zoom_eases_toward_turn_level_without_snapping():
    z = ZoomFollower(alpha=0.02, turn_threshold_deg=20.0, turn_zoom=18.5, straight_zoom=17.0)
    assert z.target_for(45.0) == 18.5
    assert z.target_for(10.0) == 17.0
    first = z.update(45.0)
    assert 17.0 < first < 18.5
    assert first == pytest.approx(17.03)


def test_camera_follow_reports_zoom_on_sharp_corner():
    route = RouteGeometry.from_points([(0.0, 0.0), (0.001, 0.0), (0.001, 0.001)])
    assert route.turn_severity(0) == pytest.approx(90.0)
    sched = SimulatedScheduler()
    samples = []
    interp = MotionInterpolator(sched, on_sample=samples.append, follow_camera=True, tick_interval=0.1)
    interp.start(route, DurationPolicy.fixed_step(0.1))
    sched.advance(0.3)
    assert samples and all(s.zoom is not None for s in samples)
    assert samples[-1].zoom > samples[0].zoom


def test_duration_policy_from_routing_estimate():
    policy = DurationPolicy.from_estimate(600, tick_interval_s=0.04)
    assert policy.step == pytest.approx(0.04 / 600)
    assert policy.eta_minutes(0.0) == 10
    assert policy.eta_minutes(0.99) == 1
    assert policy.eta_minutes(2.0) == 1
    assert DurationPolicy.from_estimate(None) == DurationPolicy()
    assert DurationPolicy().eta_minutes(0.0) == 15
    with pytest.raises(ValueError):
        DurationPolicy.fixed_step(0.0)


def test_compass_folds_unwrapped_heading():
    sample = MotionSample(position=ROUTE[0], heading=-170.0, progress=0.0, segment_index=0, eta_min=1)
    assert sample.compass == pytest.approx(190.0)
    assert MotionSample(ROUTE[0], 725.0, 0.0, 0, 1).compass == pytest.approx(5.0)


def test_bearing_at_follows_the_current_segment():
    route = RouteGeometry.from_points([(0.0, 0.0), (1.0, 0.0), (1.0, 1.0)])
    assert route.bearing_at(0.25) == pytest.approx(0.0)
    assert route.bearing_at(0.75) == pytest.approx(90.0)
    assert route.bearing_at(1.0) == pytest.approx(90.0)
    assert RouteGeometry.from_points([(0.0, 0.0)]).bearing_at(0.5) is None


def test_run_until_stops_once_the_cycle_arrives():
    sched = SimulatedScheduler()
    arrivals = []
    interp = MotionInterpolator(sched, on_arrived=arrivals.append, tick_interval=0.1)
    interp.start(RouteGeometry.from_points(ROUTE), DurationPolicy.fixed_step(0.25))

    assert sched.run_until(lambda: bool(arrivals), step=0.1, limit=5.0)
    assert sched.now() == pytest.approx(0.6)
    assert not sched.run_until(lambda: False, step=0.5, limit=1.0)
