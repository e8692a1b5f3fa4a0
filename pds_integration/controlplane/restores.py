"""Restores of backup jobs"""
from typing import Any, Dict

from rich.console import Console

from pds_integration.errors import must
from pds_integration.wait import LONG_TIMEOUT, RETRY_INTERVAL, wait_for

console = Console()

RESTORE_SUCCESSFUL = 'Successful'
RESTORE_FAILED = 'Failed'

ERROR_CODE_PX_CREDENTIALS_NOT_FOUND = 'PXCloudCredentialsNotFound'


class RestoresMixin:
    """Requires the attributes of ControlPlaneCore"""

    def create_restore(self, backup_job_id: str, name: str, namespace_id: str = '',
                       deployment_target_id: str = '') -> Dict[str, Any]:
        body = {
            'deployment_target_id': deployment_target_id or self.deployment_target_id,
            'name': name,
            'namespace_id': namespace_id or self.namespace_id,
        }
        return self.api.post(f"backup-jobs/{backup_job_id}/restore", body)

    def must_create_restore(self, backup_job_id: str, name: str, namespace_id: str = '',
                            deployment_target_id: str = '') -> Dict[str, Any]:
        with must(f"Create restore {name} from backup job {backup_job_id}"):
            restore = self.create_restore(backup_job_id, name, namespace_id, deployment_target_id)
        console.print(f"[green]✓ Created restore {restore['id']}[/green]")
        return restore

    def get_restore(self, restore_id: str) -> Dict[str, Any]:
        return self.api.get(f"restores/{restore_id}")

    def retry_restore(self, restore_id: str, name: str = '') -> Dict[str, Any]:
        """Re-submit a failed restore; the restore ID and its source lineage are kept"""
        body = {'name': name} if name else {}
        return self.api.post(f"restores/{restore_id}/retry", body)

    def must_retry_restore(self, restore_id: str, name: str = '') -> Dict[str, Any]:
        with must(f"Retry restore {restore_id}"):
            return self.retry_restore(restore_id, name)

    def _must_wait_for_restore_status(self, restore_id: str, expected: str) -> Dict[str, Any]:
        found: Dict[str, Any] = {}

        def has_status():
            restore = self.get_restore(restore_id)
            status = restore.get('status')
            assert status == expected, f"Restore {restore_id} is in status {status}."
            found.update(restore)
            return True

        wait_for(has_status, LONG_TIMEOUT, RETRY_INTERVAL, self.cancel, f"restore {restore_id} to be {expected}")
        return found

    def must_wait_for_restore_successful(self, restore_id: str) -> Dict[str, Any]:
        return self._must_wait_for_restore_status(restore_id, RESTORE_SUCCESSFUL)

    def must_wait_for_restore_failed(self, restore_id: str) -> Dict[str, Any]:
        return self._must_wait_for_restore_status(restore_id, RESTORE_FAILED)
