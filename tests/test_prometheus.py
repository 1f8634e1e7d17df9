from campaign_mailer.prometheus import MailerMetrics


def test_mailer_metrics_counters_and_gauge():
    metrics = MailerMetrics()

    metrics.inc_sent("scheduler")
    metrics.inc_sent("")
    metrics.inc_failed("permanent")
    metrics.inc_failed(None)
    metrics.inc_retried()
    metrics.inc_claim_conflict()
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'cm_sent_total{source="scheduler"} 2.0' in output
    assert b'cm_failed_total{reason="permanent"} 2.0' in output
    assert b"cm_retried_total 1.0" in output
    assert b"cm_claim_conflicts_total 1.0" in output
    assert b"cm_pending_jobs 3.0" in output


def test_instances_use_separate_registries():
    first = MailerMetrics()
    second = MailerMetrics()
    first.inc_retried()

    assert b"cm_retried_total 1.0" in first.generate_latest()
    assert b"cm_retried_total 0.0" in second.generate_latest()
