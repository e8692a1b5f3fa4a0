"""
Backups, backup jobs, backup policies, backup credentials and backup targets
"""
from typing import Any, Dict, Iterable, List, Optional

from rich.console import Console

from pds_integration.controlplane.models import GoogleCredentials, S3Credentials, backup_schedule
from pds_integration.errors import ApiError, NotFoundError, PDSTestError, must
from pds_integration.naming import random_string
from pds_integration.wait import (
    LONG_TIMEOUT, RETRY_INTERVAL, SHORT_RETRY_INTERVAL, SHORT_TIMEOUT, STANDARD_TIMEOUT, wait_for,
)

console = Console()

BACKUP_JOB_SUCCEEDED = 'Succeeded'
BACKUP_JOB_FAILED = 'Failed'
BACKUP_TARGET_STATE_SUCCESSFUL = 'successful'

BACKUP_TARGET_STATE_TIMEOUT = 60
BACKUP_TARGET_DELETE_TIMEOUT = 5 * 60


class BackupsMixin:
    """Requires the attributes of ControlPlaneCore"""

    # Backups

    def create_adhoc_backup(self, deployment_id: str, backup_target_id: str) -> Dict[str, Any]:
        body = {'backup_level': 'snapshot', 'backup_target_id': backup_target_id, 'backup_type': 'adhoc'}
        return self.api.post(f"deployments/{deployment_id}/backups", body)

    def must_create_backup(self, deployment_id: str, backup_target_id: str) -> Dict[str, Any]:
        with must(f"Create backup for deployment {deployment_id}"):
            backup = self.create_adhoc_backup(deployment_id, backup_target_id)
        console.print(f"[green]✓ Created adhoc backup {backup['id']}[/green]")
        return backup

    def get_backup(self, backup_id: str) -> Dict[str, Any]:
        return self.api.get(f"backups/{backup_id}")

    def list_backups_by_deployment(self, deployment_id: str, sort_by: str = '') -> List[Dict[str, Any]]:
        return self.api.list_data(f"deployments/{deployment_id}/backups", params={'sort_by': sort_by})

    def delete_backup(self, backup_id: str, local_only: bool = False) -> None:
        params = {'local_only': 'true'} if local_only else None
        self.api.delete(f"backups/{backup_id}", params=params)

    def must_wait_for_backup_removed(self, backup_id: str) -> None:
        def removed():
            try:
                self.get_backup(backup_id)
            except NotFoundError:
                return True
            return False, PDSTestError(f"Backup {backup_id} still exists.")

        wait_for(removed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"backup {backup_id} to be removed")

    def must_get_schedule_backup(self, deployment_id: str, exclude_ids: Iterable[str] = (),
                                 timeout: float = LONG_TIMEOUT) -> Dict[str, Any]:
        """
        The most recently created backup of a deployment with a schedule.

        Backups whose IDs are in `exclude_ids` are skipped; after a policy
        switch pass the previous schedule's backup ID so that polling goes on
        until the new schedule's backup shows up.
        """
        excluded = set(exclude_ids)
        found: Dict[str, Any] = {}

        def has_backup():
            backups = self.list_backups_by_deployment(deployment_id, sort_by='created_at')
            candidates = [b for b in backups if b.get('id') not in excluded]
            assert candidates, f"No new backups found for deployment {deployment_id} ({len(backups)} listed)."
            found.clear()
            found.update(candidates[-1])
            return True

        wait_for(has_backup, timeout, RETRY_INTERVAL, self.cancel,
                 f"scheduled backup of deployment {deployment_id}")
        return found

    # Backup jobs

    def list_backup_jobs_in_project(self, project_id: str = '', backup_id: str = '', deployment_id: str = '',
                                    deployment_target_id: str = '', namespace_id: str = '') -> List[Dict[str, Any]]:
        params = {
            'backup_id': backup_id,
            'deployment_id': deployment_id,
            'deployment_target_id': deployment_target_id,
            'namespace_id': namespace_id,
        }
        return self.api.list_data(f"projects/{project_id or self.project_id}/backup-jobs", params=params)

    def list_backup_jobs_of_backup(self, backup_id: str) -> List[Dict[str, Any]]:
        return self.api.list_data(f"backups/{backup_id}/jobs")

    def get_backup_job(self, backup_job_id: str) -> Dict[str, Any]:
        return self.api.get(f"backup-jobs/{backup_job_id}")

    def must_get_backup_job(self, backup_job_id: str) -> Dict[str, Any]:
        with must(f"Getting backup job {backup_job_id}"):
            return self.get_backup_job(backup_job_id)

    def delete_backup_job(self, backup_job_id: str) -> None:
        self.api.delete(f"backup-jobs/{backup_job_id}")

    def delete_backup_job_by_name(self, backup_id: str, job_name: str) -> None:
        self.api.delete(f"backups/{backup_id}/jobs/{job_name}")

    def must_delete_backup_job(self, backup_job_id: str) -> None:
        with must(f"Deleting backup job {backup_job_id}"):
            self.delete_backup_job(backup_job_id)

    def must_delete_backup_job_by_name(self, backup_id: str, job_name: str) -> None:
        with must(f"Deleting backup job {job_name} of backup {backup_id}"):
            self.delete_backup_job_by_name(backup_id, job_name)

    def must_wait_for_backup_job_removed(self, backup_id: str, job_name: str = '') -> None:
        """
        Wait until the backup has no jobs left, or, with a job name, until
        that job is no longer listed.
        """
        def removed():
            jobs = self.list_backup_jobs_of_backup(backup_id)
            if job_name:
                names = [j.get('name') for j in jobs]
                assert job_name not in names, f"Backup job {job_name} still exists."
            else:
                assert not jobs, f"Backup {backup_id} still has {len(jobs)} job(s)."
            return True

        wait_for(removed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel,
                 f"backup jobs of {backup_id} to be removed")

    def must_wait_for_backup_job_id_removed(self, backup_job_id: str) -> None:
        def removed():
            try:
                self.get_backup_job(backup_job_id)
            except NotFoundError:
                return True
            return False, PDSTestError(f"Backup job {backup_job_id} still exists.")

        wait_for(removed, STANDARD_TIMEOUT, RETRY_INTERVAL, self.cancel, f"backup job {backup_job_id} to be removed")

    def count_successful_backup_jobs(self, backup_id: str) -> int:
        jobs = self.list_backup_jobs_in_project(backup_id=backup_id)
        return sum(1 for job in jobs if job.get('status') == BACKUP_JOB_SUCCEEDED)

    def must_ensure_n_backup_jobs_success_from_schedule(self, backup_id: str, count: int,
                                                        schedule_interval: float = 60,
                                                        timeout: Optional[float] = None) -> None:
        """
        Wait until at least `count` jobs of the given backup have succeeded.

        Only jobs of this backup ID count; after a policy switch pass the new
        schedule's backup.
        """
        if timeout is None:
            timeout = count * schedule_interval + STANDARD_TIMEOUT

        def enough():
            succeeded = self.count_successful_backup_jobs(backup_id)
            assert succeeded >= count, f"Backup {backup_id} has {succeeded}/{count} successful jobs."
            return True

        wait_for(enough, timeout, RETRY_INTERVAL, self.cancel,
                 f"{count} successful backup jobs of backup {backup_id}")

    # Backup policies

    def create_backup_policy(self, name: str, schedule: Optional[str], retention: Optional[int]) -> Dict[str, Any]:
        body = {
            'name': name,
            'schedules': [backup_schedule(schedule, retention)],
        }
        return self.api.post(f"tenants/{self.tenant_id}/backup-policies", body)

    def must_create_backup_policy(self, name: str, schedule: Optional[str], retention: Optional[int]) -> Dict[str, Any]:
        with must(f"Create backup policy {name}"):
            return self.create_backup_policy(name, schedule, retention)

    def list_backup_policies(self, policy_id: str = '') -> List[Dict[str, Any]]:
        return self.api.list_data(f"tenants/{self.tenant_id}/backup-policies", params={'id': policy_id})

    def get_backup_policy(self, policy_id: str) -> Dict[str, Any]:
        return self.api.get(f"backup-policies/{policy_id}")

    def update_backup_policy(self, policy_id: str, name: str, schedules: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.api.put(f"backup-policies/{policy_id}", {'name': name, 'schedules': schedules})

    def delete_backup_policy(self, policy_id: str) -> None:
        self.api.delete(f"backup-policies/{policy_id}")

    def must_delete_backup_policy(self, policy_id: str) -> None:
        with must(f"Delete backup policy {policy_id}"):
            self.delete_backup_policy(policy_id)

    # Backup credentials

    def create_backup_credentials(self, name: str, credentials: Dict[str, Any]) -> Dict[str, Any]:
        return self.api.post(f"tenants/{self.tenant_id}/backup-credentials",
                             {'name': name, 'credentials': credentials})

    def must_create_s3_backup_credentials(self, name: str, access_key: str, secret_key: str,
                                          endpoint: str) -> Dict[str, Any]:
        credentials = S3Credentials(access_key, secret_key, endpoint)
        with must(f"Create S3 backup credentials {name}"):
            return self.create_backup_credentials(name, credentials.to_dict())

    def get_backup_credentials(self, credentials_id: str) -> Dict[str, Any]:
        return self.api.get(f"backup-credentials/{credentials_id}")

    def get_backup_credentials_no_secrets(self, credentials_id: str) -> Dict[str, Any]:
        """Credentials payload with secret fields omitted by the server"""
        return self.api.get(f"backup-credentials/{credentials_id}/credentials")

    def list_backup_credentials(self) -> List[Dict[str, Any]]:
        return self.api.list_data(f"tenants/{self.tenant_id}/backup-credentials")

    def update_backup_credentials(self, credentials_id: str, name: str,
                                  credentials: Dict[str, Any]) -> Dict[str, Any]:
        return self.api.put(f"backup-credentials/{credentials_id}", {'name': name, 'credentials': credentials})

    def update_google_backup_credentials(self, credentials_id: str, name: str, project_id: str,
                                         json_key: str) -> Dict[str, Any]:
        credentials = GoogleCredentials(project_id, json_key)
        return self.update_backup_credentials(credentials_id, name, credentials.to_dict())

    def delete_backup_credentials(self, credentials_id: str) -> None:
        self.api.delete(f"backup-credentials/{credentials_id}")

    def must_delete_backup_credentials(self, credentials_id: str) -> None:
        with must(f"Delete backup credentials {credentials_id}"):
            self.delete_backup_credentials(credentials_id)

    def must_delete_backup_credentials_if_exists(self, credentials_id: str) -> None:
        try:
            self.delete_backup_credentials(credentials_id)
        except NotFoundError:
            console.print(f"[yellow]Backup credentials {credentials_id} already deleted[/yellow]")
        except ApiError as e:
            raise AssertionError(f"Delete backup credentials {credentials_id}: {e}") from e

    # Backup targets

    def create_s3_backup_target(self, credentials_id: str, bucket: str, region: str,
                                name: str = '') -> Dict[str, Any]:
        body = {
            'name': name or f"integration-test-s3-{random_string(6)}",
            'type': 's3',
            'bucket': bucket,
            'region': region,
            'backup_credentials_id': credentials_id,
        }
        return self.api.post(f"tenants/{self.tenant_id}/backup-targets", body)

    def must_create_s3_backup_target(self, credentials_id: str, bucket: str, region: str) -> Dict[str, Any]:
        with must(f"Create S3 backup target in bucket {bucket}"):
            target = self.create_s3_backup_target(credentials_id, bucket, region)
        console.print(f"[green]✓ Created backup target {target['name']}[/green]")
        return target

    def get_backup_target(self, target_id: str) -> Dict[str, Any]:
        return self.api.get(f"backup-targets/{target_id}")

    def list_backup_target_states(self, target_id: str) -> List[Dict[str, Any]]:
        return self.api.list_data(f"backup-targets/{target_id}/states")

    def get_backup_target_state(self, target_id: str, deployment_target_id: str = '') -> Dict[str, Any]:
        deployment_target_id = deployment_target_id or self.deployment_target_id
        for state in self.list_backup_target_states(target_id):
            if state.get('deployment_target_id') == deployment_target_id:
                return state
        raise LookupError(f"backup target {target_id} has no state for deployment target {deployment_target_id}")

    def must_wait_for_backup_target_state(self, target_id: str,
                                          expected: str = BACKUP_TARGET_STATE_SUCCESSFUL) -> Dict[str, Any]:
        found: Dict[str, Any] = {}

        def has_state():
            state = self.get_backup_target_state(target_id)
            assert state.get('state') == expected, f"Backup target {target_id} is in state {state.get('state')}."
            found.update(state)
            return True

        wait_for(has_state, BACKUP_TARGET_STATE_TIMEOUT, SHORT_RETRY_INTERVAL, self.cancel,
                 f"backup target {target_id} to be {expected}")
        return found

    def must_ensure_backup_target_created_in_tc(self, target_id: str) -> Dict[str, Any]:
        return self.must_wait_for_backup_target_state(target_id, BACKUP_TARGET_STATE_SUCCESSFUL)

    def delete_backup_target(self, target_id: str) -> None:
        self.api.delete(f"backup-targets/{target_id}", params={'force': 'true'})

    def must_delete_backup_target(self, target_id: str) -> None:
        with must(f"Delete backup target {target_id}"):
            self.delete_backup_target(target_id)

        def removed():
            try:
                self.get_backup_target(target_id)
            except NotFoundError:
                return True
            return False, PDSTestError(f"Backup target {target_id} still exists.")

        wait_for(removed, BACKUP_TARGET_DELETE_TIMEOUT, SHORT_RETRY_INTERVAL, self.cancel,
                 f"backup target {target_id} to be removed")

    def must_delete_backup_target_if_exists(self, target_id: str) -> None:
        try:
            self.get_backup_target(target_id)
        except NotFoundError:
            return
        self.must_delete_backup_target(target_id)

    def wait_for_backup_job_status(self, backup_job_id: str, statuses=(BACKUP_JOB_SUCCEEDED, BACKUP_JOB_FAILED),
                                   timeout: float = SHORT_TIMEOUT) -> Dict[str, Any]:
        """Poll a CP backup job until its status is one of `statuses`"""
        found: Dict[str, Any] = {}

        def finished():
            job = self.get_backup_job(backup_job_id)
            assert job.get('status') in statuses, f"Backup job {backup_job_id} is {job.get('status')}."
            found.update(job)
            return True

        wait_for(finished, timeout, RETRY_INTERVAL, self.cancel, f"backup job {backup_job_id} to finish")
        return found
