"""Object-store checks for backup verification"""
from typing import List, Optional

import boto3

from pds_integration.errors import PDSTestError


def cloudsnap_path_prefix(cloudsnap_id: str) -> str:
    """'<px-id>/<path-prefix>' -> '<path-prefix>'"""
    parts = cloudsnap_id.split('/', 1)
    if len(parts) != 2 or not parts[1]:
        raise PDSTestError(f"invalid cloudsnap id {cloudsnap_id!r}")
    return parts[1]


class S3StorageProvider:
    """Lists backup objects in one bucket"""

    def __init__(self, bucket: str, region: str, access_key: str, secret_key: str,
                 endpoint_url: Optional[str] = None, s3_client=None):
        self.bucket = bucket
        self.s3 = s3_client or boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    def list_objects_with_prefix(self, prefix: str) -> List[str]:
        keys: List[str] = []
        paginator = self.s3.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj['Key'] for obj in page.get('Contents', []))
        return keys

    def count_objects_with_prefix(self, prefix: str) -> int:
        return len(self.list_objects_with_prefix(prefix))
