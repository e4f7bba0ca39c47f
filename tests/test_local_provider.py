"""
Local cloud simulator: the ordering constraints real services enforce.
"""
import pytest

from stackplan.errors import OperationTimeoutError
from stackplan.providers.base import ResourceKind
from stackplan.providers.local import CLOUDFRONT_ZONE_ID, LocalCloud


@pytest.fixture
def local(tmp_path):
    return LocalCloud("aws", {"path": str(tmp_path / "cloud.json"), "poll_interval": 0})


def _issued_certificate(local):
    certs = local.capability(ResourceKind.CERTIFICATE)
    records = local.capability(ResourceKind.DNS_RECORD)
    zone = local.capability(ResourceKind.DNS_ZONE).create({"name": "example.com"})
    cert = certs.create({"domain_name": "example.com"})
    option = cert["domain_validation_options"][0]
    records.create({
        "zone_id": zone["id"],
        "name": option["resource_record_name"],
        "type": option["resource_record_type"],
        "records": [option["resource_record_value"]],
    })
    return cert


class TestLocalCloud:
    def test_every_kind_supported(self, local):
        for kind in ResourceKind:
            assert local.capability(kind) is not None

    def test_bucket_named_from_input(self, local):
        bucket = local.capability(ResourceKind.BUCKET).create({"bucket": "site-example"})
        assert bucket["id"] == "site-example"
        assert bucket["arn"] == "arn:aws:s3:::site-example"
        assert bucket["bucket_regional_domain_name"].startswith("site-example.s3.")

    def test_duplicate_bucket_rejected(self, local):
        buckets = local.capability(ResourceKind.BUCKET)
        buckets.create({"bucket": "taken"})
        with pytest.raises(RuntimeError, match="already exists"):
            buckets.create({"bucket": "taken"})

    def test_record_requires_zone(self, local):
        with pytest.raises(RuntimeError, match="NoSuchHostedZone"):
            local.capability(ResourceKind.DNS_RECORD).create({"zone_id": "Zmissing", "name": "www"})

    def test_zone_not_deleted_while_records_remain(self, local):
        zones = local.capability(ResourceKind.DNS_ZONE)
        records = local.capability(ResourceKind.DNS_RECORD)
        zone = zones.create({"name": "example.com"})
        record = records.create({"zone_id": zone["id"], "name": "www.example.com", "type": "A"})

        with pytest.raises(RuntimeError, match="HostedZoneNotEmpty"):
            zones.delete(zone["id"])
        records.delete(record["id"])
        zones.delete(zone["id"])
        assert zones.read(zone["id"]) is None

    def test_zone_has_name_servers(self, local):
        zone = local.capability(ResourceKind.DNS_ZONE).create({"name": "example.com."})
        assert zone["name"] == "example.com"
        assert len(zone["name_servers"]) == 4

    def test_certificate_pending_until_validation_record(self, local):
        certs = local.capability(ResourceKind.CERTIFICATE)
        cert = certs.create({"domain_name": "example.com"})
        assert certs.read(cert["id"])["status"] == "PENDING_VALIDATION"

        _issued_certificate(local)
        # a second certificate for the same domain has its own validation record
        assert certs.read(cert["id"])["status"] == "PENDING_VALIDATION"

    def test_certificate_issued_once_record_exists(self, local):
        cert = _issued_certificate(local)
        assert local.capability(ResourceKind.CERTIFICATE).read(cert["id"])["status"] == "ISSUED"

    def test_validation_waits_for_issue(self, local):
        validations = local.capability(ResourceKind.CERTIFICATE_VALIDATION)
        cert = local.capability(ResourceKind.CERTIFICATE).create({"domain_name": "example.com"})
        validation = validations.create({"certificate_arn": cert["arn"]})
        with pytest.raises(OperationTimeoutError):
            validations.wait_until_ready("aws_acm_certificate_validation.cert", validation["id"], 0.05)

    def test_validation_ready_when_issued(self, local):
        cert = _issued_certificate(local)
        validations = local.capability(ResourceKind.CERTIFICATE_VALIDATION)
        validation = validations.create({"certificate_arn": cert["arn"]})
        live = validations.wait_until_ready("aws_acm_certificate_validation.cert", validation["id"], 1)
        assert live["status"] == "ISSUED"
        assert live["certificate_arn"] == cert["arn"]

    def test_distribution_requires_issued_certificate(self, local):
        cert = local.capability(ResourceKind.CERTIFICATE).create({"domain_name": "example.com"})
        with pytest.raises(RuntimeError, match="InvalidViewerCertificate"):
            local.capability(ResourceKind.DISTRIBUTION).create({
                "enabled": True,
                "viewer_certificate": {"acm_certificate_arn": cert["arn"]},
            })

    def test_distribution_propagates_after_polls(self, tmp_path):
        local = LocalCloud("aws", {
            "path": str(tmp_path / "cloud.json"), "poll_interval": 0, "propagation_polls": 2,
        })
        cert = _issued_certificate(local)
        dists = local.capability(ResourceKind.DISTRIBUTION)
        dist = dists.create({
            "origin": {"domain_name": "site.s3.us-east-1.amazonaws.com", "origin_id": "s3"},
            "viewer_certificate": {"acm_certificate_arn": cert["arn"]},
        })
        assert dist["status"] == "InProgress"
        assert dist["hosted_zone_id"] == CLOUDFRONT_ZONE_ID
        assert dist["origin_domain_names"] == ["site.s3.us-east-1.amazonaws.com"]
        assert [dists.read(dist["id"])["status"] for _ in range(3)] == [
            "InProgress", "InProgress", "Deployed"
        ]

    def test_distribution_wait_times_out(self, tmp_path):
        local = LocalCloud("aws", {
            "path": str(tmp_path / "cloud.json"), "poll_interval": 0.01, "propagation_polls": 1000,
        })
        dists = local.capability(ResourceKind.DISTRIBUTION)
        dist = dists.create({"enabled": True})
        with pytest.raises(OperationTimeoutError) as exc_info:
            dists.wait_until_ready("aws_cloudfront_distribution.cdn", dist["id"], 0.05)
        assert exc_info.value.address == "aws_cloudfront_distribution.cdn"

    def test_policy_requires_bucket(self, local):
        policies = local.capability(ResourceKind.ACCESS_POLICY)
        with pytest.raises(RuntimeError, match="NoSuchBucket"):
            policies.create({"bucket": "nope", "policy": "{}"})

    def test_malformed_policy(self, local):
        local.capability(ResourceKind.BUCKET).create({"bucket": "site"})
        with pytest.raises(RuntimeError, match="MalformedPolicy"):
            local.capability(ResourceKind.ACCESS_POLICY).create({"bucket": "site", "policy": "{nope"})

    def test_bucket_not_deleted_while_policy_attached(self, local):
        buckets = local.capability(ResourceKind.BUCKET)
        policies = local.capability(ResourceKind.ACCESS_POLICY)
        buckets.create({"bucket": "site"})
        policies.create({"bucket": "site", "policy": '{"Version": "2012-10-17"}'})
        with pytest.raises(RuntimeError, match="policy attached"):
            buckets.delete("site")

    def test_update_keeps_id(self, local):
        buckets = local.capability(ResourceKind.BUCKET)
        bucket = buckets.create({"bucket": "site", "acl": "private"})
        updated = buckets.update("site", {"bucket": "site", "acl": "public-read"}, bucket)
        assert updated["id"] == "site"
        assert buckets.read("site")["acl"] == "public-read"

    def test_delete_missing_is_quiet(self, local):
        local.capability(ResourceKind.BUCKET).delete("never-existed")

    def test_aliases_share_the_backing_file(self, tmp_path):
        path = str(tmp_path / "cloud.json")
        default = LocalCloud("aws", {"path": path})
        east = LocalCloud("aws.us_east_1", {"path": path, "region": "us-east-1"})
        bucket = default.capability(ResourceKind.BUCKET).create({"bucket": "shared"})
        assert east.capability(ResourceKind.BUCKET).read(bucket["id"]) is not None
