import pytest

from splai.observability.metrics import (
    Registry,
    format_prom_line,
    sanitize_metric_name,
)


def test_render_prometheus():
    r = Registry()
    r.inc_counter("queue_claimed_total", {"queue_backend": "memory", "worker_id": "w1"}, 3)
    r.set_gauge("dead_letter_count", {"queue_backend": "memory"}, 2)

    out = r.render_prometheus()
    assert 'queue_claimed_total{queue_backend="memory",worker_id="w1"} 3' in out
    assert 'dead_letter_count{queue_backend="memory"} 2' in out


def test_render_lines_are_sorted_and_newline_terminated():
    r = Registry()
    r.inc_counter("zeta", None, 1)
    r.set_gauge("alpha", None, 5)
    out = r.render_prometheus()
    assert out == "alpha 5\nzeta 1\n"


def test_counter_accumulates_and_zero_delta_is_ignored():
    r = Registry()
    r.inc_counter("c", {"a": "1"}, 2)
    r.inc_counter("c", {"a": "1"}, 0.5)
    r.inc_counter("other", None, 0)
    snap = r.snapshot()
    assert len(snap.counters) == 1
    assert snap.counters[0].value == 2.5
    assert snap.counters[0].labels == {"a": "1"}


def test_label_order_does_not_split_series():
    r = Registry()
    r.inc_counter("c", {"a": "1", "b": "2"}, 1)
    r.inc_counter("c", {"b": "2", "a": "1"}, 1)
    snap = r.snapshot()
    assert [p.value for p in snap.counters] == [2]


def test_gauge_overwrites_and_snapshot_is_sorted():
    r = Registry()
    r.set_gauge("b", None, 1)
    r.set_gauge("a", None, 3)
    r.set_gauge("b", None, 7)
    snap = r.snapshot()
    assert [(p.name, p.value) for p in snap.gauges] == [("a", 3), ("b", 7)]
    assert snap.gauges[0].labels is None


def test_snapshot_labels_are_copies():
    r = Registry()
    r.inc_counter("c", {"k": "v"}, 1)
    r.snapshot().counters[0].labels["k"] = "changed"
    assert r.snapshot().counters[0].labels == {"k": "v"}


def test_reset_clears_everything():
    r = Registry()
    r.inc_counter("c", None, 1)
    r.set_gauge("g", None, 1)
    r.reset()
    snap = r.snapshot()
    assert snap.counters == [] and snap.gauges == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", "splai_metric"),
        ("   ", "splai_metric"),
        ("queue_claimed_total", "queue_claimed_total"),
        ("1abc", "_abc"),
        ("a-b.c", "a_b_c"),
        (" a9 ", "a9"),
    ],
)
def test_sanitize_metric_name(raw, expected):
    assert sanitize_metric_name(raw) == expected


def test_format_prom_line_values():
    assert format_prom_line("m", None, 2.5) == "m 2.5"
    assert format_prom_line("m", None, 3.0) == "m 3"
    assert format_prom_line("m", None, 1e20) == "m 100000000000000000000"


def test_format_prom_line_escapes_label_values():
    line = format_prom_line("m", {"bad-key": 'say "hi"'}, 1)
    assert line == 'm{bad_key="say \\"hi\\""} 1'