"""
Dataservice catalogue: names, container names, templates and the version matrix
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from pds_integration.errors import ConfigError
from pds_integration.wait import LONG_TIMEOUT, VERY_LONG_TIMEOUT

logger = logging.getLogger(__name__)

CASSANDRA = 'Cassandra'
COUCHBASE = 'Couchbase'
KAFKA = 'Kafka'
MONGODB = 'MongoDB Enterprise'
MYSQL = 'MySQL'
POSTGRESQL = 'PostgreSQL'
RABBITMQ = 'RabbitMQ'
REDIS = 'Redis'
SQLSERVER = 'MS SQL Server'
ZOOKEEPER = 'ZooKeeper'
ELASTICSEARCH = 'Elasticsearch'
CONSUL = 'Consul'

ALL_DATASERVICES = [
    CASSANDRA, COUCHBASE, KAFKA, MONGODB, MYSQL, POSTGRESQL,
    RABBITMQ, REDIS, SQLSERVER, ZOOKEEPER, ELASTICSEARCH, CONSUL,
]

# Main container of each dataservice's pods, used for image checks
CONTAINER_NAMES = {
    POSTGRESQL: 'postgresql',
    CASSANDRA: 'cassandra',
    COUCHBASE: 'couchbase',
    REDIS: 'redis',
    ZOOKEEPER: 'zookeeper',
    KAFKA: 'kafka',
    RABBITMQ: 'rabbitmq',
    MONGODB: 'mongos',
    MYSQL: 'mysql',
    ELASTICSEARCH: 'elasticsearch',
    CONSUL: 'consul',
}

DEFAULT_VERSION_MATRIX = """
dataservices:
  - name: Cassandra
    versions: ["4.1.2", "4.0.10", "3.11.15", "3.0.29"]
  - name: Consul
    versions: ["1.15.3", "1.14.7"]
  - name: Couchbase
    versions: ["7.1.1", "7.2.0"]
  - name: Elasticsearch
    versions: ["8.8.0"]
  - name: Kafka
    versions: ["3.4.1", "3.3.2", "3.2.3", "3.1.2"]
  - name: MongoDB Enterprise
    versions: ["6.0.6"]
  - name: MySQL
    versions: ["8.0.33"]
  - name: PostgreSQL
    versions: ["15.3", "14.8", "13.11", "12.15", "11.20"]
  - name: RabbitMQ
    versions: ["3.11.16", "3.10.22"]
  - name: Redis
    versions: ["7.0.9"]
  - name: MS SQL Server
    versions: ["2019-CU20"]
  - name: ZooKeeper
    versions: ["3.8.1", "3.7.1"]
"""


def healthy_timeout(node_count: int) -> int:
    """Multi-node deployments get the very long timeout"""
    return VERY_LONG_TIMEOUT if node_count > 1 else LONG_TIMEOUT


@dataclass
class DSVersionMatrix:
    """Dataservice name -> versions to test, first entry is the latest"""

    versions: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str) -> 'DSVersionMatrix':
        try:
            doc = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid dataservice version matrix: {e}") from e
        entries = doc.get('dataservices') if isinstance(doc, dict) else None
        if not isinstance(entries, list):
            raise ConfigError("dataservice version matrix must contain a 'dataservices' list")
        matrix = cls()
        for entry in entries:
            name = entry.get('name')
            if not name:
                raise ConfigError(f"dataservice entry without a name: {entry}")
            # YAML reads 15.3 as a float unless quoted
            matrix.versions[name] = [str(v) for v in entry.get('versions') or []]
        return matrix

    @classmethod
    def from_file(cls, path: str) -> 'DSVersionMatrix':
        if not os.path.isfile(path):
            raise ConfigError(f"dataservice version matrix file {path} does not exist")
        with open(path, 'r') as f:
            return cls.from_yaml(f.read())

    @classmethod
    def from_string(cls, text: str) -> 'DSVersionMatrix':
        """Parse the compact form Name=v1,v2;Name2=v3"""
        matrix = cls()
        for part in text.split(';'):
            part = part.strip()
            if not part:
                continue
            if '=' not in part:
                raise ConfigError(f"invalid dataservice version entry {part!r}, expected Name=v1,v2")
            name, versions = part.split('=', 1)
            matrix.versions[name.strip()] = [v.strip() for v in versions.split(',') if v.strip()]
        return matrix

    @classmethod
    def default(cls) -> 'DSVersionMatrix':
        return cls.from_yaml(DEFAULT_VERSION_MATRIX)

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'DSVersionMatrix':
        if path:
            logger.info("Loading dataservice version matrix from %s", path)
            return cls.from_file(path)
        return cls.default()

    def _key(self, name: str) -> Optional[str]:
        for key in self.versions:
            if key.lower() == name.lower():
                return key
        return None

    def has_dataservice(self, name: str) -> bool:
        return self._key(name) is not None

    def get_versions(self, name: str) -> List[str]:
        key = self._key(name)
        return list(self.versions[key]) if key else []

    def get_latest_version(self, name: str) -> str:
        versions = self.get_versions(name)
        if not versions:
            raise ConfigError(f"no versions configured for dataservice {name}")
        return versions[0]


# Templates created per dataservice by the control-plane init

@dataclass
class AppConfigTemplateItem:
    key: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {'key': self.key, 'value': self.value}


@dataclass
class AppConfigTemplate:
    name: str
    items: List[AppConfigTemplateItem]

    def to_dict(self) -> Dict:
        return {'name': self.name, 'config_items': [i.to_dict() for i in self.items]}


@dataclass
class ResourceSettingsTemplate:
    name: str
    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str
    storage_request: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'name': self.name,
            'cpu_request': self.cpu_request,
            'cpu_limit': self.cpu_limit,
            'memory_request': self.memory_request,
            'memory_limit': self.memory_limit,
            'storage_request': self.storage_request,
        }


@dataclass
class DataserviceTemplates:
    app_config: List[AppConfigTemplate] = field(default_factory=list)
    resources: List[ResourceSettingsTemplate] = field(default_factory=list)


DATASERVICE_TEMPLATES: Dict[str, DataserviceTemplates] = {
    CASSANDRA: DataserviceTemplates(
        app_config=[
            AppConfigTemplate(name='default', items=[
                AppConfigTemplateItem('HEAP_NEWSIZE', '400M'),
                AppConfigTemplateItem('MAX_HEAP_SIZE', '1G'),
                AppConfigTemplateItem('PDS_VERBOSE_PROBE_CHECKS', '1'),
            ]),
        ],
        resources=[
            ResourceSettingsTemplate('small', '1', '1.25', '1500M', '2000M', '5G'),
            ResourceSettingsTemplate('med', '1.1', '1.35', '1800M', '2500M', '5G'),
        ],
    ),
    POSTGRESQL: DataserviceTemplates(
        app_config=[AppConfigTemplate(name='default', items=[])],
        resources=[ResourceSettingsTemplate('small', '500m', '1', '500M', '1G', '5G')],
    ),
    KAFKA: DataserviceTemplates(
        app_config=[AppConfigTemplate(name='default', items=[
            AppConfigTemplateItem('heapSize', '400M'),
        ])],
        resources=[ResourceSettingsTemplate('small', '1', '1.5', '1G', '2G', '5G')],
    ),
    REDIS: DataserviceTemplates(
        app_config=[AppConfigTemplate(name='default', items=[])],
        resources=[ResourceSettingsTemplate('small', '500m', '1', '500M', '1G', '5G')],
    ),
}


def templates_for(name: str) -> DataserviceTemplates:
    """Templates of a dataservice; unknown dataservices get a generic small template"""
    if name in DATASERVICE_TEMPLATES:
        return DATASERVICE_TEMPLATES[name]
    return DataserviceTemplates(
        app_config=[AppConfigTemplate(name='default', items=[])],
        resources=[ResourceSettingsTemplate('small', '1', '1.5', '1G', '2G', '5G')],
    )
