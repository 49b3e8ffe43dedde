"""
Data models for the Postgres custom resource

The resource body travels as the plain dict returned by the Kubernetes
custom objects API; these dataclasses are the typed view the controller
works with, and know how to convert back to the camelCase wire format.
"""

import copy
import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from postgres_controller.errors import InvalidKeyError

STATUS_READY = "READY"
STATUS_UPDATING = "UPDATING"


def make_key(namespace: str, name: str) -> str:
    """Build the work queue key of a namespaced object"""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str) -> Tuple[str, str]:
    """
    Split a namespace/name key into its parts

    Args:
        key: Work queue key

    Returns:
        Tuple of (namespace, name); namespace is empty for cluster-scoped keys

    Raises:
        InvalidKeyError: if the key has more than one separator or no name
    """
    if not isinstance(key, str):
        raise InvalidKeyError(repr(key))
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise InvalidKeyError(key)


# ============================================================================
# SPEC AND STATUS
# ============================================================================

@dataclass
class UserSpec:
    """A database user declared on the resource"""
    username: str
    password: str = ""
    attributes: List[str] = field(default_factory=list)

    def fingerprint(self) -> str:
        """Content digest used to detect password or attribute changes"""
        content = f"{self.username}:{self.password}:{sorted(a.upper() for a in self.attributes)}"
        return hashlib.sha256(content.encode()).hexdigest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSpec":
        return cls(
            username=data.get("username") or "",
            password=data.get("password") or "",
            attributes=list(data.get("attributes") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResourceSpec:
    """Desired state, owned by the resource author"""
    deployment_name: str
    image: str = "postgres:9.3"
    replicas: int = 1
    databases: List[str] = field(default_factory=list)
    users: List[UserSpec] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceSpec":
        data = data or {}
        return cls(
            deployment_name=data.get("deploymentName") or "",
            image=data.get("image") or "postgres:9.3",
            replicas=int(data.get("replicas") or 1),
            databases=list(data.get("databases") or []),
            users=[UserSpec.from_dict(u) for u in data.get("users") or []],
            commands=list(data.get("commands") or []),
        )


@dataclass
class ResourceStatus:
    """Observed state, written only by the controller"""
    action_history: List[str] = field(default_factory=list)
    databases: List[str] = field(default_factory=list)
    users: List[UserSpec] = field(default_factory=list)
    service_ip: str = ""
    service_port: str = ""
    verify_cmd: str = ""
    status: str = ""
    available_replicas: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceStatus":
        data = data or {}
        return cls(
            action_history=list(data.get("actionHistory") or []),
            databases=list(data.get("databases") or []),
            users=[UserSpec.from_dict(u) for u in data.get("users") or []],
            service_ip=data.get("serviceIP") or "",
            service_port=str(data.get("servicePort") or ""),
            verify_cmd=data.get("verifyCmd") or "",
            status=data.get("status") or "",
            available_replicas=int(data.get("availableReplicas") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actionHistory": list(self.action_history),
            "databases": list(self.databases),
            "users": [u.to_dict() for u in self.users],
            "serviceIP": self.service_ip,
            "servicePort": self.service_port,
            "verifyCmd": self.verify_cmd,
            "status": self.status,
            "availableReplicas": self.available_replicas,
        }

    @property
    def has_endpoint(self) -> bool:
        return bool(self.service_ip and self.service_port)

    @property
    def provisioned(self) -> bool:
        """True once a create pass ran to completion; verifyCmd is written with READY only"""
        return self.has_endpoint and bool(self.verify_cmd)


@dataclass
class PostgresResource:
    """A Postgres custom object as read from the API server"""
    namespace: str
    name: str
    spec: ResourceSpec
    status: ResourceStatus
    uid: str = ""
    resource_version: str = ""
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "PostgresResource":
        metadata = body.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            uid=metadata.get("uid") or "",
            resource_version=metadata.get("resourceVersion") or "",
            spec=ResourceSpec.from_dict(body.get("spec")),
            status=ResourceStatus.from_dict(body.get("status")),
            body=body,
        )

    def deep_copy(self) -> "PostgresResource":
        """Isolated copy that is safe to mutate"""
        return copy.deepcopy(self)


@dataclass(frozen=True)
class OwnerRef:
    """
    Non-owning pointer from a provisioned object back to its Postgres resource

    Only used to route events; the lifetime of the object is governed by the
    ownerReferences the API server cascades on, never by this value.
    """
    namespace: str
    name: str
    kind: str

    @property
    def key(self) -> str:
        return make_key(self.namespace, self.name)


@dataclass(frozen=True)
class Endpoint:
    """Address a provisioned database is reachable at"""
    ip: str
    port: int


# ============================================================================
# RECONCILIATION STATS
# ============================================================================

@dataclass
class ReconciliationStats:
    """Statistics for a single reconcile pass"""
    key: str = ""
    flow: str = ""
    databases_created: int = 0
    databases_dropped: int = 0
    users_created: int = 0
    users_dropped: int = 0
    users_altered: int = 0
    statements_applied: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }
