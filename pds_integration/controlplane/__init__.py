"""
Typed facade over the PDS control-plane REST API.

ControlPlane is assembled from one mixin per resource family; all of them
share the identifiers held by ControlPlaneCore.
"""
import threading
from typing import Optional

from pds_integration.api import PDSClient
from pds_integration.auth import token_source_from_settings
from pds_integration.config import Settings
from pds_integration.controlplane.backups import BackupsMixin
from pds_integration.controlplane.core import ControlPlaneCore
from pds_integration.controlplane.deployments import DeploymentsMixin
from pds_integration.controlplane.models import ImageReference, ShortDeploymentSpec
from pds_integration.controlplane.restores import RestoresMixin


class ControlPlane(DeploymentsMixin, BackupsMixin, RestoresMixin, ControlPlaneCore):

    @classmethod
    def from_settings(cls, settings: Settings, cancel: Optional[threading.Event] = None) -> 'ControlPlane':
        api = PDSClient(settings.control_plane_api, token_source_from_settings(settings))
        return cls(api, cancel=cancel)


__all__ = ['ControlPlane', 'ImageReference', 'ShortDeploymentSpec']
