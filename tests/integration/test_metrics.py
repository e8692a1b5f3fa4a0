"""
Prometheus queries through the control-plane proxy
"""
import datetime

import pytest


@pytest.mark.integration
def test_instant_and_range_queries(prometheus, deployment_target_id):
    """The tenant-scoped proxy answers instant and range queries."""
    now = datetime.datetime.now(datetime.timezone.utc)

    instant = prometheus.query('up', at=now)
    assert instant['resultType'] == 'vector'

    ranged = prometheus.query_range('up', now - datetime.timedelta(minutes=5), now, 60)
    assert ranged['resultType'] == 'matrix'
