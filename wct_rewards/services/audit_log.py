"""Distribution audit logs on disk and in S3"""
import logging
import os
from typing import Optional

import boto3

from wct_rewards.config import S3Settings
from wct_rewards.models.distribution import DistributionSummary

logger = logging.getLogger(__name__)


class DistributionLogWriter:
    """Writes one JSON log per distribution execution, optionally mirrored to S3"""

    def __init__(self, output_dir: str, s3_settings: Optional[S3Settings] = None, s3_client=None):
        self.output_dir = output_dir
        self.s3_settings = s3_settings
        self._s3_client = s3_client

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client('s3', region_name=self.s3_settings.region)
        return self._s3_client

    @staticmethod
    def filename(summary: DistributionSummary) -> str:
        stamp = (summary.completed_at or summary.window_end).strftime('%Y-%m-%dT%H-%M-%S')
        return f"distribution-{summary.run_id}-{stamp}.json"

    def write(self, summary: DistributionSummary) -> str:
        """
        Save the summary and upload it when S3 is configured.

        Returns:
            Local path of the written log
        """
        os.makedirs(self.output_dir, exist_ok=True)
        name = self.filename(summary)
        path = os.path.join(self.output_dir, name)
        body = summary.model_dump_json(indent=2)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(body)
        logger.info(f"Distribution log saved to {path}")

        if self.s3_settings:
            key = f"{self.s3_settings.prefix.strip('/')}/{name}"
            try:
                self.s3_client.put_object(
                    Bucket=self.s3_settings.bucket,
                    Key=key,
                    Body=body.encode('utf-8'),
                    ContentType='application/json'
                )
            except Exception as e:
                logger.error(f"Error uploading distribution log: {e}")
                raise
            logger.info(f"Uploaded distribution log to s3://{self.s3_settings.bucket}/{key}")

        return path
