"""
Maps declared resource types to capability kinds and provider names to
configured handles.
"""
import importlib
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from stackplan.errors import ValidationError
from stackplan.providers.base import ProviderHandle, ResourceCapability, ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_FACTORY = "stackplan.providers.local:LocalCloud"

# Terraform and CloudFormation spellings of the same resource kinds
RESOURCE_KINDS = {
    "aws_s3_bucket":                          ResourceKind.BUCKET,
    "AWS::S3::Bucket":                        ResourceKind.BUCKET,
    "aws_cloudfront_distribution":            ResourceKind.DISTRIBUTION,
    "AWS::CloudFront::Distribution":          ResourceKind.DISTRIBUTION,
    "aws_route53_zone":                       ResourceKind.DNS_ZONE,
    "AWS::Route53::HostedZone":               ResourceKind.DNS_ZONE,
    "aws_route53_record":                     ResourceKind.DNS_RECORD,
    "AWS::Route53::RecordSet":                ResourceKind.DNS_RECORD,
    "aws_acm_certificate":                    ResourceKind.CERTIFICATE,
    "AWS::CertificateManager::Certificate":   ResourceKind.CERTIFICATE,
    "aws_acm_certificate_validation":         ResourceKind.CERTIFICATE_VALIDATION,
    "aws_s3_bucket_policy":                   ResourceKind.ACCESS_POLICY,
    "AWS::S3::BucketPolicy":                  ResourceKind.ACCESS_POLICY,
}

ProviderFactory = Callable[[str, Dict[str, Any]], ProviderHandle]


def resource_kind(resource_type: str) -> Optional[ResourceKind]:
    return RESOURCE_KINDS.get(resource_type)


def load_factory(spec: str) -> ProviderFactory:
    """Import ``package.module:callable``."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValidationError(f"provider factory must look like 'module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValidationError(f"cannot import provider factory {spec!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if factory is None:
        raise ValidationError(f"provider factory {spec!r}: {module_name} has no {attr!r}")
    return factory


class ProviderRegistry:
    """
    Named provider handles.

    Handles are created lazily from their configuration the first time a
    resource asks for them. An alias such as ``aws.us_east_1`` must be
    configured explicitly; the bare provider name falls back to the default
    factory with no options.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Dict[str, Any]]] = None,
        default_factory: str = DEFAULT_FACTORY,
    ) -> None:
        self._config: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (config or {}).items()}
        self._default_factory = default_factory
        self._handles: Dict[str, ProviderHandle] = {}

    def register(self, handle: ProviderHandle) -> None:
        self._handles[handle.name] = handle

    def configure(self, name: str, factory: Optional[str] = None, **options: Any) -> None:
        """Add (or extend) the configuration of a handle. Explicit config wins."""
        entry = self._config.setdefault(name, {})
        if factory and not entry.get("factory"):
            entry["factory"] = factory
        opts = entry.setdefault("options", {})
        for k, v in options.items():
            opts.setdefault(k, v)

    def is_known(self, name: str) -> bool:
        return name in self._handles or name in self._config or "." not in name

    def handle(self, name: str) -> ProviderHandle:
        if name in self._handles:
            return self._handles[name]
        if not self.is_known(name):
            raise ValidationError(
                f"provider {name!r} is not configured; declare it in stackplan.yaml "
                "or with a provider block"
            )
        entry = self._config.get(name, {})
        factory = load_factory(entry.get("factory") or self._default_factory)
        handle = factory(name, dict(entry.get("options") or {}))
        logger.debug("created provider handle %s", name)
        self._handles[name] = handle
        return handle

    def capability(self, provider: str, resource_type: str) -> ResourceCapability:
        kind = resource_kind(resource_type)
        if kind is None:
            raise ValidationError(f"unsupported resource type {resource_type!r}")
        cap = self.handle(provider).capability(kind)
        if cap is None:
            raise ValidationError(f"provider {provider!r} does not support {kind.value}")
        return cap

    def check(self, pairs: Iterable) -> None:
        """Validate (address, provider, resource_type) triples up front."""
        for address, provider, resource_type in pairs:
            if resource_kind(resource_type) is None:
                raise ValidationError(
                    f"{address}: unsupported resource type {resource_type!r}", address=address
                )
            if not self.is_known(provider):
                raise ValidationError(
                    f"{address}: provider {provider!r} is not configured", address=address
                )
