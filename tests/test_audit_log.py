"""Distribution audit log files and S3 mirroring."""
import json
from datetime import datetime
from unittest.mock import Mock

import pytest

from wct_rewards.config import S3Settings
from wct_rewards.models.distribution import DistributionSummary, PayoutOutcome, PayoutResult, RunStatus
from wct_rewards.services.audit_log import DistributionLogWriter


@pytest.fixture
def summary():
    return DistributionSummary(
        run_id="run-1",
        status=RunStatus.PARTIAL,
        window_start=datetime(2024, 1, 7),
        window_end=datetime(2024, 1, 14),
        total_points=150,
        total_tokens=300,
        point_to_token_ratio=2.0,
        successful_transactions=1,
        failed_transactions=1,
        payouts=[
            PayoutResult(contributor_id="a", points=100, token_amount=200,
                         outcome=PayoutOutcome.SUCCESS, transaction_ref="tx-1"),
            PayoutResult(contributor_id="b", points=50, token_amount=100,
                         outcome=PayoutOutcome.FAILED, error="rejected"),
        ],
        completed_at=datetime(2024, 1, 14, 0, 5, 30),
    )


def test_writes_the_summary_locally(tmp_path, summary):
    path = DistributionLogWriter(str(tmp_path / "logs")).write(summary)

    assert path.endswith("distribution-run-1-2024-01-14T00-05-30.json")
    with open(path) as f:
        data = json.load(f)
    assert data["status"] == "partial"
    assert data["successful_transactions"] == 1
    assert [p["outcome"] for p in data["payouts"]] == ["success", "failed"]


def test_uploads_when_a_bucket_is_configured(tmp_path, summary):
    s3 = Mock()
    writer = DistributionLogWriter(str(tmp_path), S3Settings(bucket="audit", region="eu-west-1"), s3_client=s3)

    path = writer.write(summary)

    kwargs = s3.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "audit"
    assert kwargs["Key"] == "distribution-logs/distribution-run-1-2024-01-14T00-05-30.json"
    assert kwargs["ContentType"] == "application/json"
    with open(path, "rb") as f:
        assert kwargs["Body"] == f.read()


def test_upload_errors_propagate_after_the_local_write(tmp_path, summary):
    s3 = Mock()
    s3.put_object.side_effect = RuntimeError("denied")
    writer = DistributionLogWriter(str(tmp_path), S3Settings(bucket="audit", region="eu-west-1"), s3_client=s3)

    with pytest.raises(RuntimeError):
        writer.write(summary)
    assert len(list(tmp_path.iterdir())) == 1


def test_unfinished_runs_are_named_by_window_end(summary):
    unfinished = summary.model_copy(update={"completed_at": None})
    assert DistributionLogWriter.filename(unfinished) == "distribution-run-1-2024-01-14T00-00-00.json"
