"""Tests for capability grants, grant issuers and the capabilities built from them."""

import dataclasses
import json
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from botocore.stub import ANY, Stubber

from conftest import BUCKET, ScriptedClassifier
from image_labeler.errors import GrantDenied, PermissionPropagationDelay, StoreUnavailable
from image_labeler.security import (
    Action,
    CapabilityGrant,
    GrantedCapabilities,
    StaticGrantIssuer,
    StsGrantIssuer,
    session_name_for,
)
from image_labeler.storage import InMemoryObjectStore

ROLE_ARN = "arn:aws:iam::123456789012:role/image-labeler-processing"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class DenyingStore(InMemoryObjectStore):
    def get(self, bucket, key, version):
        raise GrantDenied(f"S3 denied access to {bucket}/{key} (AccessDenied)")


class TestCapabilityGrant:
    def test_default_grant_is_exactly_the_processing_unit_actions(self):
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET, now=NOW)

        assert grant.actions == frozenset(
            {Action.READ_OBJECT, Action.INVOKE_CLASSIFICATION, Action.WRITE_TELEMETRY}
        )
        assert grant.expires_at == NOW + timedelta(seconds=900)

    def test_grant_is_immutable(self):
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET, now=NOW)

        with pytest.raises(dataclasses.FrozenInstanceError):
            grant.bucket = "other-bucket"
        with pytest.raises(dataclasses.FrozenInstanceError):
            grant.actions = frozenset({"s3:*"})

    @pytest.mark.parametrize("bucket", ["", "*", "bucket/prefix", "bucket-*"])
    def test_grant_must_name_exactly_one_bucket(self, bucket):
        with pytest.raises(ValueError):
            CapabilityGrant.for_bucket("image-labeler", bucket, now=NOW)

    def test_grant_rejects_unknown_actions(self):
        with pytest.raises(ValueError):
            CapabilityGrant(
                principal="image-labeler",
                bucket=BUCKET,
                issued_at=NOW,
                expires_at=NOW + timedelta(minutes=5),
                actions=frozenset({"delete_object"}),
            )

    def test_policy_document_scopes_reads_to_the_bucket(self):
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET, now=NOW)

        policy = grant.to_policy_document()
        statements = {s["Sid"]: s for s in policy["Statement"]}

        assert statements["ReadSourceObjects"]["Resource"] == [f"arn:aws:s3:::{BUCKET}/*"]
        assert statements["ReadSourceObjects"]["Action"] == ["s3:GetObject", "s3:GetObjectVersion"]
        assert statements["InvokeClassification"]["Action"] == ["rekognition:DetectLabels"]
        all_actions = [a for s in policy["Statement"] for a in s["Action"]]
        assert not any(a.endswith(":*") or a.startswith("s3:Put") or a.startswith("s3:Delete") for a in all_actions)

    def test_expiry(self):
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET, ttl_seconds=60, now=NOW)

        assert not grant.is_expired(NOW + timedelta(seconds=59))
        assert grant.is_expired(NOW + timedelta(seconds=60))


class TestStaticGrantIssuer:
    def test_issues_grant_for_configured_bucket(self):
        issuer = StaticGrantIssuer(allowed_bucket=BUCKET, ttl_seconds=120, clock=lambda: NOW)

        grant = issuer.issue(BUCKET, "image-labeler-evt")

        assert grant.bucket == BUCKET
        assert grant.expires_at == NOW + timedelta(seconds=120)
        assert grant.credentials is None

    def test_refuses_other_buckets(self):
        issuer = StaticGrantIssuer(allowed_bucket=BUCKET)

        with pytest.raises(GrantDenied):
            issuer.issue("someone-elses-bucket", "image-labeler-evt")


def test_session_name_is_sts_safe():
    name = session_name_for("EXAMPLE123456789:0A1B2C3D4E5F678901" + "x" * 80)

    assert len(name) <= 64
    assert ":" not in name
    assert name.startswith("image-labeler-")


class TestStsGrantIssuer:
    @pytest.fixture
    def sts(self):
        client = boto3.client(
            "sts",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        with Stubber(client) as stubber:
            yield client, stubber

    def test_assumes_role_with_grant_as_session_policy(self, sts):
        client, stubber = sts
        expiration = datetime.now(timezone.utc) + timedelta(minutes=15)
        stubber.add_response(
            "assume_role",
            {
                "Credentials": {
                    "AccessKeyId": "ASIAEXAMPLEKEY12345",
                    "SecretAccessKey": "secret",
                    "SessionToken": "token",
                    "Expiration": expiration,
                },
                "AssumedRoleUser": {
                    "AssumedRoleId": "AROAEXAMPLE:image-labeler-evt-1",
                    "Arn": "arn:aws:sts::123456789012:assumed-role/image-labeler-processing/image-labeler-evt-1",
                },
            },
            expected_params={
                "RoleArn": ROLE_ARN,
                "RoleSessionName": "image-labeler-evt-1",
                "Policy": ANY,
                "DurationSeconds": 900,
            },
        )
        issuer = StsGrantIssuer(role_arn=ROLE_ARN, allowed_bucket=BUCKET, client=client)

        grant = issuer.issue(BUCKET, "image-labeler-evt-1")

        stubber.assert_no_pending_responses()
        assert grant.credentials.access_key_id == "ASIAEXAMPLEKEY12345"
        assert grant.principal.endswith("/image-labeler-evt-1")
        assert grant.expires_at <= expiration

    def test_session_policy_is_the_grant_policy(self, sts):
        client, stubber = sts
        captured = {}

        def capture(params, **kwargs):
            captured.update(params)

        client.meta.events.register("before-parameter-build.sts.AssumeRole", capture)
        stubber.add_client_error("assume_role", service_error_code="AccessDenied", http_status_code=403)
        issuer = StsGrantIssuer(role_arn=ROLE_ARN, allowed_bucket=BUCKET, client=client)

        with pytest.raises(GrantDenied):
            issuer.issue(BUCKET, "image-labeler-evt-1")

        policy = json.loads(captured["Policy"])
        assert policy == CapabilityGrant.for_bucket(ROLE_ARN, BUCKET).to_policy_document()

    def test_throttling_is_retryable(self, sts):
        client, stubber = sts
        stubber.add_client_error("assume_role", service_error_code="Throttling", http_status_code=400)
        issuer = StsGrantIssuer(role_arn=ROLE_ARN, allowed_bucket=BUCKET, client=client)

        with pytest.raises(StoreUnavailable) as exc_info:
            issuer.issue(BUCKET, "image-labeler-evt-1")
        assert exc_info.value.retryable

    def test_refuses_other_buckets_without_calling_sts(self, sts):
        client, stubber = sts
        issuer = StsGrantIssuer(role_arn=ROLE_ARN, allowed_bucket=BUCKET, client=client)

        with pytest.raises(GrantDenied):
            issuer.issue("other-bucket", "image-labeler-evt-1")
        stubber.assert_no_pending_responses()

    def test_attempts_for_one_event_reuse_the_session(self, sts):
        client, stubber = sts
        now = datetime.now(timezone.utc)
        stubber.add_response(
            "assume_role",
            {
                "Credentials": {
                    "AccessKeyId": "ASIAEXAMPLEKEY12345",
                    "SecretAccessKey": "secret",
                    "SessionToken": "token",
                    "Expiration": now + timedelta(minutes=15),
                },
            },
        )
        clock = iter([now, now + timedelta(seconds=4)])
        issuer = StsGrantIssuer(
            role_arn=ROLE_ARN, allowed_bucket=BUCKET, client=client, clock=lambda: next(clock)
        )

        first = issuer.issue(BUCKET, "image-labeler-evt-1")
        second = issuer.issue(BUCKET, "image-labeler-evt-1")

        # Only one AssumeRole was stubbed; a second call would fail
        assert second is first
        assert first.propagating_since == now
        assert first.propagation_age_seconds(now + timedelta(seconds=4)) == 4.0


class TestGrantedCapabilities:
    def test_reader_is_bound_to_the_granted_bucket(self):
        store = InMemoryObjectStore()
        version = store.put(BUCKET, "image1.jpg", b"jpeg-bytes")
        store.put("other-bucket", "image1.jpg", b"secret")
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET)

        capabilities = GrantedCapabilities.from_grant(grant, store, ScriptedClassifier(), bucket=BUCKET)

        assert capabilities.reader.bucket == BUCKET
        assert capabilities.reader.get("image1.jpg", version) == b"jpeg-bytes"

    def test_mismatched_bucket_is_denied(self):
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET)

        with pytest.raises(GrantDenied):
            GrantedCapabilities.from_grant(grant, InMemoryObjectStore(), ScriptedClassifier(), bucket="other-bucket")

    def test_expired_grant_is_denied(self):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        grant = CapabilityGrant.for_bucket("image-labeler", BUCKET, ttl_seconds=1, now=issued)

        with pytest.raises(GrantDenied, match="expired"):
            GrantedCapabilities.from_grant(grant, InMemoryObjectStore(), ScriptedClassifier())

    def test_grant_without_classification_is_denied(self):
        grant = CapabilityGrant(
            principal="image-labeler",
            bucket=BUCKET,
            issued_at=datetime.now(timezone.utc),
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
            actions=frozenset({Action.READ_OBJECT, Action.WRITE_TELEMETRY}),
        )

        with pytest.raises(GrantDenied, match="invoke_classification"):
            GrantedCapabilities.from_grant(grant, InMemoryObjectStore(), ScriptedClassifier())

    def test_access_denied_on_fresh_session_policy_is_propagation_delay(self):
        grant = CapabilityGrant.for_bucket(
            ROLE_ARN, BUCKET, propagating_since=datetime.now(timezone.utc)
        )
        capabilities = GrantedCapabilities.from_grant(
            grant, DenyingStore(), ScriptedClassifier(), grace_seconds=30.0
        )

        with pytest.raises(PermissionPropagationDelay) as exc_info:
            capabilities.reader.get("image1.jpg", "v1")
        assert exc_info.value.retryable

    def test_access_denied_after_grace_window_is_fatal(self):
        issued = datetime.now(timezone.utc) - timedelta(minutes=2)
        grant = CapabilityGrant.for_bucket(ROLE_ARN, BUCKET, now=issued, propagating_since=issued)
        capabilities = GrantedCapabilities.from_grant(
            grant, DenyingStore(), ScriptedClassifier(), grace_seconds=30.0
        )

        with pytest.raises(GrantDenied) as exc_info:
            capabilities.reader.get("image1.jpg", "v1")
        assert not exc_info.value.retryable

    def test_access_denied_on_execution_role_grant_is_fatal(self):
        # A grant issued just now, but backed by a policy that is not propagating
        grant = StaticGrantIssuer(allowed_bucket=BUCKET).issue(BUCKET, "image-labeler-evt-1")
        capabilities = GrantedCapabilities.from_grant(
            grant, DenyingStore(), ScriptedClassifier(), grace_seconds=30.0
        )

        assert grant.propagation_age_seconds() is None
        with pytest.raises(GrantDenied):
            capabilities.reader.get("image1.jpg", "v1")
