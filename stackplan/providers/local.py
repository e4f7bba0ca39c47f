"""
File-backed simulator of the cloud resource API.

Every kind the planner knows about is implemented against a single JSON
document so ``stackplan apply`` can be exercised end to end without cloud
credentials. It behaves like the real services where it matters for
ordering: records need their zone, zones refuse deletion while records
remain, certificates stay PENDING_VALIDATION until their validation record
exists, and distributions take a few polls to reach Deployed.
"""
import copy
import hashlib
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from stackplan.providers.base import ProviderHandle, ResourceCapability, ResourceKind

logger = logging.getLogger(__name__)

_TABLES = ("buckets", "zones", "records", "certificates", "validations", "distributions", "policies")

# one lock per backing file, shared by every handle (alias) that points at it
_FILE_LOCKS: Dict[str, threading.RLock] = {}
_FILE_LOCKS_GUARD = threading.Lock()

CLOUDFRONT_ZONE_ID = "Z2FDTNDATAQYW2"


def _file_lock(path: str) -> threading.RLock:
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(os.path.abspath(path), threading.RLock())


def _pick(attrs: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if attrs.get(k) not in (None, ""):
            return attrs[k]
    return default


def _find(value: Any, keys: tuple) -> Any:
    """Depth-first search for the first of ``keys`` in nested dicts/lists."""
    if isinstance(value, dict):
        for k in keys:
            if value.get(k):
                return value[k]
        for v in value.values():
            found = _find(v, keys)
            if found:
                return found
    elif isinstance(value, list):
        for item in value:
            found = _find(item, keys)
            if found:
                return found
    return None


def _token(*parts: str, length: int = 12) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:length]


class LocalCloud(ProviderHandle):
    """Provider factory: ``LocalCloud(name, options)``."""

    def __init__(self, name: str, options: Optional[Dict[str, Any]] = None) -> None:
        options = options or {}
        self.path = options.get("path", os.path.join(".stackplan", "cloud.json"))
        self.region = options.get("region", "us-east-1")
        self.account_id = str(options.get("account_id", "000000000000"))
        self.propagation_polls = int(options.get("propagation_polls", 1))
        poll_interval = float(options.get("poll_interval", 0.5))
        capabilities = {}
        for cls in (
            LocalBucket,
            LocalZone,
            LocalRecord,
            LocalCertificate,
            LocalCertificateValidation,
            LocalDistribution,
            LocalBucketPolicy,
        ):
            cap = cls(self)
            cap.poll_interval = poll_interval
            capabilities[cls.kind] = cap
        super().__init__(name, capabilities)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {t: {} for t in _TABLES}
        with open(self.path, encoding="utf-8") as fh:
            data = json.load(fh)
        for t in _TABLES:
            data.setdefault(t, {})
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".cloud-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Dict[str, Any]]]:
        with _file_lock(self.path):
            data = self._load()
            yield data
            self._save(data)


class LocalCapability(ResourceCapability):
    table = ""

    def __init__(self, cloud: LocalCloud) -> None:
        self.cloud = cloud

    # subclasses fill these in
    def _new_id(self, attributes: Dict[str, Any], data: Dict[str, Any]) -> str:
        return uuid.uuid4().hex

    def _computed(self, rid: str, attributes: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _observe(self, record: Dict[str, Any], data: Dict[str, Any]) -> None:
        """Advance simulated asynchronous state on read."""

    def _check_delete(self, rid: str, data: Dict[str, Any]) -> None:
        pass

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self.cloud.transaction() as data:
            rid = self._new_id(attributes, data)
            if rid in data[self.table]:
                raise RuntimeError(f"{self.kind.value} {rid!r} already exists")
            record = dict(attributes)
            record.update(self._computed(rid, attributes, data))
            record["id"] = rid
            data[self.table][rid] = record
            logger.debug("local: created %s %s", self.kind.value, rid)
            return copy.deepcopy(record)

    def read(self, resource_id: str) -> Optional[Dict[str, Any]]:
        with self.cloud.transaction() as data:
            record = data[self.table].get(resource_id)
            if record is None:
                return None
            self._observe(record, data)
            return copy.deepcopy(record)

    def update(
        self, resource_id: str, attributes: Dict[str, Any], prior: Dict[str, Any]
    ) -> Dict[str, Any]:
        with self.cloud.transaction() as data:
            if resource_id not in data[self.table]:
                raise RuntimeError(f"{self.kind.value} {resource_id!r} not found")
            record = dict(attributes)
            record.update(self._computed(resource_id, attributes, data))
            record["id"] = resource_id
            data[self.table][resource_id] = record
            return copy.deepcopy(record)

    def delete(self, resource_id: str) -> None:
        with self.cloud.transaction() as data:
            if resource_id not in data[self.table]:
                logger.debug("local: %s %s already gone", self.kind.value, resource_id)
                return
            self._check_delete(resource_id, data)
            del data[self.table][resource_id]


class LocalBucket(LocalCapability):
    kind = ResourceKind.BUCKET
    table = "buckets"

    def _new_id(self, attributes, data):
        name = _pick(attributes, "bucket", "bucket_name", "BucketName")
        if name:
            return name
        prefix = _pick(attributes, "bucket_prefix", default="stackplan-")
        return f"{prefix}{uuid.uuid4().hex[:16]}"

    def _computed(self, rid, attributes, data):
        region = self.cloud.region
        return {
            "bucket": rid,
            "arn": f"arn:aws:s3:::{rid}",
            "region": region,
            "bucket_domain_name": f"{rid}.s3.amazonaws.com",
            "bucket_regional_domain_name": f"{rid}.s3.{region}.amazonaws.com",
            "regional_domain_name": f"{rid}.s3.{region}.amazonaws.com",
            "website_endpoint": f"{rid}.s3-website-{region}.amazonaws.com",
        }

    def _check_delete(self, rid, data):
        if rid in data["policies"]:
            raise RuntimeError(f"bucket {rid!r} still has a policy attached")


class LocalZone(LocalCapability):
    kind = ResourceKind.DNS_ZONE
    table = "zones"

    def _new_id(self, attributes, data):
        return "Z" + uuid.uuid4().hex[:13].upper()

    def _computed(self, rid, attributes, data):
        name = str(_pick(attributes, "name", "Name", default="")).rstrip(".")
        if not name:
            raise ValueError("hosted zone requires a name")
        return {
            "name": name,
            "zone_id": rid,
            "arn": f"arn:aws:route53:::hostedzone/{rid}",
            "name_servers": [
                f"ns-{int(_token(rid, str(i), length=3), 16) % 2048}.awsdns-{i:02d}.{tld}"
                for i, tld in enumerate(("com", "net", "org", "co.uk"))
            ],
        }

    def _check_delete(self, rid, data):
        remaining = [r for r in data["records"].values() if r.get("zone_id") == rid]
        if remaining:
            raise RuntimeError(
                f"HostedZoneNotEmpty: zone {rid} still has {len(remaining)} record(s)"
            )


class LocalRecord(LocalCapability):
    kind = ResourceKind.DNS_RECORD
    table = "records"

    def _zone(self, attributes, data) -> str:
        zone_id = _pick(attributes, "zone_id", "HostedZoneId")
        if zone_id not in data["zones"]:
            raise RuntimeError(f"NoSuchHostedZone: {zone_id!r}")
        return zone_id

    def _new_id(self, attributes, data):
        zone_id = self._zone(attributes, data)
        name = str(_pick(attributes, "name", "Name", default="")).rstrip(".")
        rtype = _pick(attributes, "type", "Type", default="A")
        return f"{zone_id}_{name}_{rtype}"

    def _computed(self, rid, attributes, data):
        zone_id = self._zone(attributes, data)
        name = str(_pick(attributes, "name", "Name", default="")).rstrip(".")
        return {"zone_id": zone_id, "fqdn": name}


class LocalCertificate(LocalCapability):
    kind = ResourceKind.CERTIFICATE
    table = "certificates"

    def _new_id(self, attributes, data):
        return (
            f"arn:aws:acm:{self.cloud.region}:{self.cloud.account_id}:certificate/{uuid.uuid4()}"
        )

    def _computed(self, rid, attributes, data):
        domain = _pick(attributes, "domain_name", "DomainName")
        if not domain:
            raise ValueError("certificate requires domain_name")
        sans = _pick(attributes, "subject_alternative_names", "SubjectAlternativeNames", default=[])
        options = []
        for d in [domain] + [s for s in sans if s != domain]:
            options.append({
                "domain_name": d,
                "resource_record_name": f"_{_token(rid, d, length=32)}.{d.lstrip('*.')}.",
                "resource_record_type": "CNAME",
                "resource_record_value": f"_{_token(d, rid, length=32)}.acm-validations.aws.",
            })
        return {
            "arn": rid,
            "domain_validation_options": options,
            "status": "PENDING_VALIDATION",
        }

    def _observe(self, record, data):
        if record.get("status") == "ISSUED":
            return
        present = {r.get("fqdn", "").rstrip(".") for r in data["records"].values()}
        wanted = {o["resource_record_name"].rstrip(".") for o in record["domain_validation_options"]}
        if wanted <= present:
            record["status"] = "ISSUED"

    def is_ready(self, attributes):
        return attributes.get("status") in ("PENDING_VALIDATION", "ISSUED")


class LocalCertificateValidation(LocalCapability):
    kind = ResourceKind.CERTIFICATE_VALIDATION
    table = "validations"

    def _new_id(self, attributes, data):
        arn = _pick(attributes, "certificate_arn")
        if arn not in data["certificates"]:
            raise RuntimeError(f"certificate {arn!r} not found")
        return arn

    def _computed(self, rid, attributes, data):
        return {"certificate_arn": rid, "status": data["certificates"][rid].get("status")}

    def _observe(self, record, data):
        cert = data["certificates"].get(record["certificate_arn"])
        if cert is None:
            record["status"] = "FAILED"
            return
        self.cloud.capabilities[ResourceKind.CERTIFICATE]._observe(cert, data)
        record["status"] = cert["status"]

    def is_ready(self, attributes):
        if attributes.get("status") == "FAILED":
            raise RuntimeError("certificate was deleted during validation")
        return attributes.get("status") == "ISSUED"


class LocalDistribution(LocalCapability):
    kind = ResourceKind.DISTRIBUTION
    table = "distributions"

    def _new_id(self, attributes, data):
        return "E" + uuid.uuid4().hex[:13].upper()

    def _computed(self, rid, attributes, data):
        cert_arn = _find(attributes, ("acm_certificate_arn", "AcmCertificateArn"))
        if cert_arn:
            cert = data["certificates"].get(cert_arn)
            if cert is not None:
                self.cloud.capabilities[ResourceKind.CERTIFICATE]._observe(cert, data)
            if cert is None or cert.get("status") != "ISSUED":
                raise RuntimeError(
                    f"InvalidViewerCertificate: {cert_arn} is missing or not issued"
                )
        origins: List[str] = []
        for key in ("origin", "Origins"):
            found = attributes.get(key) or _find(attributes, (key,))
            if isinstance(found, dict):
                found = [found]
            for o in found or []:
                domain = _pick(o, "domain_name", "DomainName")
                if domain:
                    origins.append(domain)
        return {
            "arn": f"arn:aws:cloudfront::{self.cloud.account_id}:distribution/{rid}",
            "domain_name": f"d{_token(rid, length=13)}.cloudfront.net",
            "hosted_zone_id": CLOUDFRONT_ZONE_ID,
            "origin_domain_names": origins,
            "status": "InProgress",
            "polls": 0,
        }

    def _observe(self, record, data):
        if record.get("status") == "Deployed":
            return
        record["polls"] = record.get("polls", 0) + 1
        if record["polls"] > self.cloud.propagation_polls:
            record["status"] = "Deployed"

    def is_ready(self, attributes):
        return attributes.get("status") == "Deployed"


class LocalBucketPolicy(LocalCapability):
    kind = ResourceKind.ACCESS_POLICY
    table = "policies"

    def _new_id(self, attributes, data):
        bucket = _pick(attributes, "bucket", "Bucket")
        if bucket not in data["buckets"]:
            raise RuntimeError(f"NoSuchBucket: {bucket!r}")
        return bucket

    def _computed(self, rid, attributes, data):
        policy = _pick(attributes, "policy", "PolicyDocument", default="")
        if isinstance(policy, str) and policy:
            try:
                json.loads(policy)
            except ValueError as exc:
                raise RuntimeError(f"MalformedPolicy: {exc}") from exc
        return {"bucket": rid}
