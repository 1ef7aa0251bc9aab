"""
Routing configuration.

The domain list, route table, workstream triggers and forwarding addresses are
loaded when the processor is built and frozen into a RoutingConfig, which is
passed explicitly into the resolver. Every invocation sees the same static
configuration. Nothing in the routing path reads global state.

Load priority:
1. S3 override (ROUTING_CONFIG_BUCKET + ROUTING_CONFIG_KEY), optional
2. Local JSON file (ROUTING_CONFIG_PATH, default src/config/routing.json)

Addresses and workstream endpoints can be overridden by environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from botocore.exceptions import ClientError

from .models import DomainConfig, RouteEntry

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(os.environ.get(
    'ROUTING_CONFIG_PATH',
    Path(__file__).parent.parent / 'config' / 'routing.json'
))

# Last-resort destination when processing fails outright
HARDCODED_FALLBACK_FORWARD = 'postmaster@localhost'

WORKSTREAM_ENV_VARS = {
    'litigation': 'EVIDENCE_ROUTER_URL',
    'finance': 'FINANCE_ROUTER_URL',
    'compliance': 'COMPLIANCE_ROUTER_URL',
}

DEFAULT_WORKSTREAM_TRIGGERS = {
    'litigation': ('evidence', 'litigation', 'intake'),
    'finance': ('finance', 'accounting', 'invoice', 'billing', 'payment'),
    'compliance': ('compliance', 'audit', 'regulatory', 'governance'),
}

DEFAULT_PRIORITY_LOCAL_PARTS = ('legal', 'security', 'abuse')

DEFAULT_TRUSTED_SENDERS = (
    '@cloudflare.com',
    '@google.com',
    '@github.com',
    '@stripe.com',
    '@openai.com',
    '@anthropic.com',
)


class ConfigurationError(Exception):
    """Raised when routing configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class RoutingConfig:
    """
    Immutable routing configuration for one invocation.

    Attributes:
        domains: Domain name -> DomainConfig
        routes: Local-part -> RouteEntry
        workstream_triggers: Local-part -> workstream name
        workstream_endpoints: Workstream name -> intake URL (configured only)
        management_forward: Management address
        default_forward: Global default forward (None: unconfigured domains are rejected)
        fallback_forward: Safe destination used when processing fails
        personal_local_parts: Local-parts exempt from urgency re-routing
        priority_local_parts: Local-parts that always mark a message priority
        trusted_senders: Sender substrings that mark a message priority
        webhook_url: Notification webhook (None disables webhooks)
    """
    domains: Mapping[str, DomainConfig] = field(default_factory=lambda: MappingProxyType({}))
    routes: Mapping[str, RouteEntry] = field(default_factory=lambda: MappingProxyType({}))
    workstream_triggers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    workstream_endpoints: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    management_forward: str = ''
    default_forward: Optional[str] = None
    fallback_forward: str = HARDCODED_FALLBACK_FORWARD
    personal_local_parts: FrozenSet[str] = frozenset()
    priority_local_parts: FrozenSet[str] = frozenset(DEFAULT_PRIORITY_LOCAL_PARTS)
    trusted_senders: Tuple[str, ...] = DEFAULT_TRUSTED_SENDERS
    webhook_url: Optional[str] = None

    def domain(self, name: str) -> Optional[DomainConfig]:
        return self.domains.get(name.lower())

    def workstream_configured(self, workstream: str) -> bool:
        return bool(self.workstream_endpoints.get(workstream))

    def default_for(self, domain_name: str) -> str:
        """Domain default, else global default, else the safe fallback."""
        domain = self.domain(domain_name)
        if domain and domain.default_forward:
            return domain.default_forward
        return self.default_forward or self.fallback_forward

    def resolve_address(self, address: str, domain_name: str) -> str:
        """Expand the symbolic route targets 'management' and 'default'."""
        if address == 'management':
            return self.management_forward
        if address == 'default':
            return self.default_for(domain_name)
        return address

    @classmethod
    def from_dict(cls, data: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> 'RoutingConfig':
        """
        Build a frozen config from parsed JSON plus environment overrides.

        Args:
            data: Parsed routing.json content
            env: Environment mapping (defaults to os.environ)

        Returns:
            RoutingConfig

        Raises:
            ConfigurationError: If the structure is invalid
        """
        env = os.environ if env is None else env

        try:
            domains = {
                name.lower(): DomainConfig(
                    name=name.lower(),
                    priority=bool(settings.get('priority', False)),
                    default_forward=settings.get('default_forward') or None,
                )
                for name, settings in (data.get('domains') or {}).items()
            }
            routes = {
                local.lower(): RouteEntry.parse(value)
                for local, value in (data.get('routes') or {}).items()
            }
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid routing configuration: {e}")

        workstreams = data.get('workstreams') or {}
        triggers_by_workstream = workstreams.get('triggers') or DEFAULT_WORKSTREAM_TRIGGERS
        triggers = {}
        for workstream, local_parts in triggers_by_workstream.items():
            for local in local_parts:
                triggers[local.lower()] = workstream.lower()

        endpoints = {}
        for workstream, url in (workstreams.get('endpoints') or {}).items():
            if url:
                endpoints[workstream.lower()] = url
        for workstream, var in WORKSTREAM_ENV_VARS.items():
            if env.get(var):
                endpoints[workstream] = env[var]

        management = env.get('MANAGEMENT_FORWARD') or data.get('management_forward')
        if not management:
            raise ConfigurationError("management_forward is required (config file or MANAGEMENT_FORWARD)")

        return cls(
            domains=MappingProxyType(domains),
            routes=MappingProxyType(routes),
            workstream_triggers=MappingProxyType(triggers),
            workstream_endpoints=MappingProxyType(endpoints),
            management_forward=management,
            default_forward=env.get('DEFAULT_FORWARD') or data.get('default_forward') or None,
            fallback_forward=(
                env.get('FALLBACK_FORWARD') or data.get('fallback_forward') or HARDCODED_FALLBACK_FORWARD
            ),
            personal_local_parts=frozenset(p.lower() for p in data.get('personal_local_parts', ())),
            priority_local_parts=frozenset(
                p.lower() for p in data.get('priority_local_parts', DEFAULT_PRIORITY_LOCAL_PARTS)
            ),
            trusted_senders=tuple(s.lower() for s in data.get('trusted_senders', DEFAULT_TRUSTED_SENDERS)),
            webhook_url=env.get('WEBHOOK_URL') or data.get('webhook_url') or None,
        )


def _load_from_filesystem(path: Path) -> Dict[str, Any]:
    logger.info(f"Loading routing config from filesystem: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _load_from_s3(bucket: str, key: str) -> Dict[str, Any]:
    from services import s3 as s3_service

    logger.info(f"Loading routing config from S3: s3://{bucket}/{key}")
    return json.loads(s3_service.fetch_object(bucket, key).decode('utf-8'))


def load_routing_config(env: Optional[Mapping[str, str]] = None) -> RoutingConfig:
    """
    Load routing configuration with S3 override and filesystem fallback.

    Args:
        env: Environment mapping (defaults to os.environ)

    Returns:
        RoutingConfig: Frozen configuration

    Raises:
        ConfigurationError: If no valid configuration can be loaded
    """
    env = os.environ if env is None else env
    data = None

    bucket = env.get('ROUTING_CONFIG_BUCKET')
    key = env.get('ROUTING_CONFIG_KEY', 'config/routing.json')
    if bucket:
        try:
            data = _load_from_s3(bucket, key)
        except (ClientError, ValueError) as e:
            logger.warning(
                f"S3 routing config not available ({e.__class__.__name__}), "
                f"falling back to local filesystem"
            )

    if data is None:
        path = Path(env.get('ROUTING_CONFIG_PATH', CONFIG_PATH))
        try:
            data = _load_from_filesystem(path)
        except FileNotFoundError:
            raise ConfigurationError(f"Routing config not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Routing config is not valid JSON: {path}: {e}")

    config = RoutingConfig.from_dict(data, env=env)
    logger.info(
        f"Routing config loaded: domains={len(config.domains)}, routes={len(config.routes)}, "
        f"workstreams={sorted(config.workstream_endpoints)}, "
        f"global_default={'set' if config.default_forward else 'unset'}"
    )
    return config
