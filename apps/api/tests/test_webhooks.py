"""Provider webhook ingestion tests: signatures, decoding and reconciliation."""

from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
import json
import os
import time
import unittest

from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.core.webhook_signature import sign_headers, verify_signature
from app.domain.ledger_rules import cost_for
from app.errors import ApiError
from app.main import create_app
from app.repositories.memory import InMemoryStore
from app.schemas.job import JobKind, JobStatus
from app.schemas.ledger import Plan
from app.schemas.webhook import PredictionEvent, TrainingEvent, UnrecognizedEvent, WebhookOutcome
from app.services.ledger import LedgerService
from app.services.reconciliation import ReconciliationEngine
from app.services.webhooks import decode_event

WEBHOOK_SECRET = "test-webhook-secret"
OWNER_HEADERS = {"Authorization": "Bearer test:owner-1"}


def _subscribe(store: InMemoryStore, user_id: str, plan: Plan = Plan.PROFESSIONAL) -> None:
    now = datetime.now(UTC)
    LedgerService(store).reset_for_new_period(
        user_id=user_id,
        plan=plan,
        period_start=now - timedelta(days=1),
        period_end=now + timedelta(days=29),
    )


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "ATELIER_AUTH_PROVIDER",
        "ATELIER_BILLING_SECRET",
        "ATELIER_PROVIDER_WEBHOOK_SECRET",
        "ATELIER_PROVIDER_BACKEND",
        "ATELIER_WEBHOOK_VERIFICATION_MODE",
        "ATELIER_REFUND_POLICY",
    )
    verification_mode = "strict"
    refund_policy = "refund"

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["ATELIER_AUTH_PROVIDER"] = "mock"
        os.environ["ATELIER_BILLING_SECRET"] = "test-billing-secret"
        os.environ["ATELIER_PROVIDER_WEBHOOK_SECRET"] = WEBHOOK_SECRET
        os.environ["ATELIER_PROVIDER_BACKEND"] = "mock"
        os.environ["ATELIER_WEBHOOK_VERIFICATION_MODE"] = self.verification_mode
        os.environ["ATELIER_REFUND_POLICY"] = self.refund_policy
        get_settings.cache_clear()

        self.app = create_app()
        self.client = TestClient(self.app)
        self.store: InMemoryStore = self.app.state.store
        self._delivery_counter = 0

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()

    def _submit(self, body: dict) -> dict:
        response = self.client.post("/api/v1/jobs", headers=OWNER_HEADERS, json=body)
        self.assertEqual(response.status_code, 201)
        return response.json()

    def _submit_generation(self) -> dict:
        return self._submit({"kind": "GENERATION", "prompt": "a red fox"})

    def _submit_training(self) -> dict:
        return self._submit(
            {"kind": "TRAINING", "model_name": "fox", "training_data_url": "https://cdn.example/fox.zip"}
        )

    def _deliver(self, payload: dict, *, signed: bool = True, timestamp: str | None = None):
        self._delivery_counter += 1
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signed:
            headers.update(
                sign_headers(
                    secret=WEBHOOK_SECRET,
                    delivery_id=f"msg-{self._delivery_counter}",
                    timestamp=timestamp or str(int(time.time())),
                    body=body,
                )
            )
        return self.client.post("/api/v1/webhooks/provider", content=body, headers=headers)

    def _credits(self) -> int:
        return self.store.get_ledger("owner-1").credits_remaining


class WebhookSignatureUnitTests(unittest.TestCase):
    def test_signed_headers_verify_and_tampering_fails(self) -> None:
        body = b'{"id":"p-1","status":"succeeded"}'
        now = datetime(2026, 3, 1, tzinfo=UTC)
        timestamp = str(int(now.timestamp()))
        headers = sign_headers(secret="s3cret", delivery_id="msg-1", timestamp=timestamp, body=body)

        def _check(secret: str, payload: bytes, signature: str | None):
            return verify_signature(
                secret=secret,
                delivery_id="msg-1",
                timestamp=timestamp,
                signature_header=signature,
                body=payload,
                tolerance_seconds=300,
                now=now,
            )

        self.assertTrue(_check("s3cret", body, headers["webhook-signature"]).valid)
        self.assertEqual(_check("s3cret", body + b" ", headers["webhook-signature"]).reason, "signature_mismatch")
        self.assertEqual(_check("other", body, headers["webhook-signature"]).reason, "signature_mismatch")
        self.assertEqual(_check("s3cret", body, None).reason, "missing_headers")

    def test_any_listed_signature_may_match(self) -> None:
        body = b"{}"
        now = datetime(2026, 3, 1, tzinfo=UTC)
        timestamp = str(int(now.timestamp()))
        valid = sign_headers(secret="new", delivery_id="msg-1", timestamp=timestamp, body=body)["webhook-signature"]

        check = verify_signature(
            secret="new",
            delivery_id="msg-1",
            timestamp=timestamp,
            signature_header=f"v1,bm90LWl0 {valid}",
            body=body,
            tolerance_seconds=300,
            now=now,
        )

        self.assertTrue(check.valid)

    def test_timestamp_outside_tolerance_is_rejected(self) -> None:
        body = b"{}"
        now = datetime(2026, 3, 1, tzinfo=UTC)
        old = str(int((now - timedelta(minutes=10)).timestamp()))
        headers = sign_headers(secret="s3cret", delivery_id="msg-1", timestamp=old, body=body)

        stale = verify_signature(
            secret="s3cret",
            delivery_id="msg-1",
            timestamp=old,
            signature_header=headers["webhook-signature"],
            body=body,
            tolerance_seconds=300,
            now=now,
        )
        malformed = verify_signature(
            secret="s3cret",
            delivery_id="msg-1",
            timestamp="yesterday",
            signature_header=headers["webhook-signature"],
            body=body,
            tolerance_seconds=300,
            now=now,
        )

        self.assertEqual(stale.reason, "stale_timestamp")
        self.assertEqual(malformed.reason, "malformed_timestamp")

    def test_non_canonical_timestamp_is_malformed_even_when_signed(self) -> None:
        body = b"{}"
        now = datetime(2026, 3, 1, tzinfo=UTC)
        seconds = int(now.timestamp())

        for timestamp in (f"{seconds:_}", f" {seconds} ", f"+{seconds}"):
            with self.subTest(timestamp=timestamp):
                headers = sign_headers(secret="s3cret", delivery_id="msg-1", timestamp=timestamp, body=body)
                check = verify_signature(
                    secret="s3cret",
                    delivery_id="msg-1",
                    timestamp=timestamp,
                    signature_header=headers["webhook-signature"],
                    body=body,
                    tolerance_seconds=300,
                    now=now,
                )
                self.assertFalse(check.valid)
                self.assertEqual(check.reason, "malformed_timestamp")

    def test_whsec_prefixed_secret_is_base64_decoded(self) -> None:
        raw_key = b"0123456789abcdef0123456789abcdef"
        secret = "whsec_" + base64.b64encode(raw_key).decode("ascii")
        body = b'{"id":"p-1"}'
        now = datetime(2026, 3, 1, tzinfo=UTC)
        timestamp = str(int(now.timestamp()))

        headers = sign_headers(secret=secret, delivery_id="msg-9", timestamp=timestamp, body=body)
        check = verify_signature(
            secret=secret,
            delivery_id="msg-9",
            timestamp=timestamp,
            signature_header=headers["webhook-signature"],
            body=body,
            tolerance_seconds=300,
            now=now,
        )
        literal = sign_headers(
            secret=raw_key.decode("ascii"),
            delivery_id="msg-9",
            timestamp=timestamp,
            body=body,
        )

        self.assertTrue(check.valid)
        self.assertEqual(headers["webhook-signature"], literal["webhook-signature"])


class DecodeEventUnitTests(unittest.TestCase):
    @staticmethod
    def _decode(payload, kind: JobKind | None = None):
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return decode_event(raw, lookup_kind=lambda _: kind)

    def test_prediction_shape_and_status_mapping(self) -> None:
        for provider_status, expected in (
            ("starting", JobStatus.PROCESSING),
            ("processing", JobStatus.PROCESSING),
            ("succeeded", JobStatus.SUCCEEDED),
            ("failed", JobStatus.FAILED),
            ("canceled", JobStatus.CANCELED),
            ("cancelled", JobStatus.CANCELED),
        ):
            with self.subTest(provider_status=provider_status):
                event = self._decode({"id": "p-1", "status": provider_status, "output": ["https://cdn.example/a.png"]})
                self.assertIsInstance(event, PredictionEvent)
                self.assertEqual(event.reported_status, expected)
                self.assertEqual(event.outputs, ["https://cdn.example/a.png"])

    def test_training_shape_collects_weights_and_version(self) -> None:
        event = self._decode(
            {
                "id": "t-1",
                "status": "succeeded",
                "destination": "owner/fox",
                "output": {"weights": "https://cdn.example/fox.tar", "version": "owner/fox:abc"},
            }
        )

        self.assertIsInstance(event, TrainingEvent)
        self.assertEqual(event.outputs, ["https://cdn.example/fox.tar", "owner/fox:abc"])

    def test_wrapper_key_selects_the_variant(self) -> None:
        event = self._decode({"training": {"id": "t-1", "status": "processing"}})

        self.assertIsInstance(event, TrainingEvent)
        self.assertEqual(event.reported_status, JobStatus.PROCESSING)

    def test_shapeless_payload_uses_registered_kind(self) -> None:
        payload = {"id": "x-1", "status": "processing"}

        self.assertIsInstance(self._decode(payload, JobKind.TRAINING), TrainingEvent)
        self.assertIsInstance(self._decode(payload, JobKind.EDIT), PredictionEvent)
        unknown = self._decode(payload, None)
        self.assertIsInstance(unknown, UnrecognizedEvent)
        self.assertEqual(unknown.reason, "ambiguous_shape_unknown_job")

    def test_unusable_payloads_are_unrecognized(self) -> None:
        cases = (
            (b"{not json", "malformed_json"),
            (b"[1, 2]", "not_an_object"),
            ({"status": "succeeded"}, "missing_id_or_status"),
            ({"id": "p-1", "status": "exploded", "output": []}, "unknown_status"),
        )
        for payload, reason in cases:
            with self.subTest(reason=reason):
                event = self._decode(payload)
                self.assertIsInstance(event, UnrecognizedEvent)
                self.assertEqual(event.reason, reason)

    def test_error_text_is_bounded(self) -> None:
        event = self._decode({"id": "p-1", "status": "failed", "output": None, "error": "x" * 5000}, JobKind.GENERATION)

        self.assertEqual(len(event.error), 2000)


class StrictWebhookApiTests(_SettingsEnvCase):
    def test_unsigned_delivery_returns_401_and_leaves_registry_unchanged(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()
        writes_before = self.store.job_write_count

        response = self._deliver({"id": job["external_id"], "status": "succeeded", "output": ["https://x/1.png"]}, signed=False)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "SIGNATURE_INVALID")
        self.assertEqual(self.store.job_write_count, writes_before)
        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.QUEUED)

    def test_stale_timestamp_is_rejected(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()

        response = self._deliver(
            {"id": job["external_id"], "status": "succeeded", "output": []},
            timestamp=str(int(time.time()) - 3600),
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.QUEUED)

    def test_progress_then_success_unions_outputs(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()
        external_id = job["external_id"]

        progress = self._deliver({"id": external_id, "status": "processing", "output": ["https://cdn.example/1.png"]})
        done = self._deliver(
            {"id": external_id, "status": "succeeded", "output": ["https://cdn.example/1.png", "https://cdn.example/2.png"]}
        )

        self.assertEqual(progress.json()["outcome"], "applied")
        self.assertEqual(progress.json()["current_status"], "PROCESSING")
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json(), {
            "acknowledged": True,
            "outcome": "applied",
            "job_id": job["id"],
            "current_status": "SUCCEEDED",
        })
        stored = self.store.get_job(job["id"])
        self.assertEqual(stored.outputs, ["https://cdn.example/1.png", "https://cdn.example/2.png"])
        self.assertIsNotNone(stored.completed_at)

    def test_duplicate_success_is_acknowledged_without_writes(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()
        payload = {"id": job["external_id"], "status": "succeeded", "output": ["https://cdn.example/1.png"]}

        self._deliver(payload)
        writes_before = self.store.job_write_count
        replay = self._deliver(payload)

        self.assertEqual(replay.status_code, 200)
        self.assertEqual(replay.json()["outcome"], "duplicate")
        self.assertEqual(self.store.job_write_count, writes_before)

    def test_late_progress_after_success_is_stale(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()
        self._deliver({"id": job["external_id"], "status": "succeeded", "output": ["https://cdn.example/1.png"]})

        late = self._deliver({"id": job["external_id"], "status": "processing", "output": ["https://cdn.example/9.png"]})

        self.assertEqual(late.status_code, 200)
        self.assertEqual(late.json()["outcome"], "stale")
        self.assertEqual(late.json()["current_status"], "SUCCEEDED")
        self.assertEqual(self.store.get_job(job["id"]).outputs, ["https://cdn.example/1.png"])

    def test_unknown_job_is_acknowledged(self) -> None:
        response = self._deliver({"id": "never-submitted", "status": "succeeded", "output": ["https://x/1.png"]})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outcome"], "unknown_job")
        self.assertEqual(self.store.job_write_count, 0)

    def test_unrecognized_payload_is_acknowledged(self) -> None:
        response = self._deliver({"id": "never-submitted", "status": "processing"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outcome"], "unrecognized")

    def test_shapeless_progress_is_routed_by_registered_kind(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_training()

        response = self._deliver({"id": job["external_id"], "status": "processing"})

        self.assertEqual(response.json()["outcome"], "applied")
        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.PROCESSING)

    def test_variant_that_contradicts_registered_kind_is_dropped(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_training()

        response = self._deliver({"id": job["external_id"], "status": "succeeded", "output": ["https://x/1.png"]})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outcome"], "kind_mismatch")
        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.QUEUED)

    def test_repeated_failure_refunds_exactly_once(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()
        self.assertEqual(self._credits(), 999)
        payload = {"id": job["external_id"], "status": "failed", "output": None, "error": "NSFW content detected"}

        first = self._deliver(payload)
        second = self._deliver(payload)

        self.assertEqual(first.json()["outcome"], "applied")
        self.assertEqual(second.json()["outcome"], "duplicate")
        self.assertEqual(self._credits(), 1000)
        stored = self.store.get_job(job["id"])
        self.assertTrue(stored.refunded)
        self.assertEqual(stored.error_message, "NSFW content detected")

    def test_training_success_keeps_slot_and_failure_returns_it(self) -> None:
        _subscribe(self.store, "owner-1")
        succeeded = self._submit_training()
        failed = self._submit_training()
        self.assertEqual(self.store.get_ledger("owner-1").model_slots_remaining, 1)

        self._deliver(
            {
                "id": succeeded["external_id"],
                "status": "succeeded",
                "output": {"weights": "https://cdn.example/fox.tar", "version": "owner/fox:abc"},
            }
        )
        self._deliver({"training": {"id": failed["external_id"], "status": "failed", "error": "bad images"}})

        self.assertTrue(self.store.get_job(succeeded["id"]).slot_committed)
        self.assertEqual(self.store.get_job(succeeded["id"]).outputs, ["https://cdn.example/fox.tar", "owner/fox:abc"])
        self.assertEqual(self.store.get_job(failed["id"]).status, JobStatus.FAILED)
        self.assertEqual(self.store.get_ledger("owner-1").model_slots_remaining, 2)


class PermissiveWebhookApiTests(_SettingsEnvCase):
    verification_mode = "permissive"

    def test_unsigned_delivery_is_processed(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()

        response = self._deliver({"id": job["external_id"], "status": "succeeded", "output": ["https://x/1.png"]}, signed=False)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outcome"], "applied")
        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.SUCCEEDED)


class NoRefundPolicyWebhookApiTests(_SettingsEnvCase):
    refund_policy = "none"

    def test_failure_keeps_the_charge(self) -> None:
        _subscribe(self.store, "owner-1")
        job = self._submit_generation()

        self._deliver({"id": job["external_id"], "status": "failed", "output": None, "error": "boom"})

        self.assertEqual(self.store.get_job(job["id"]).status, JobStatus.FAILED)
        self.assertFalse(self.store.get_job(job["id"]).refunded)
        self.assertEqual(self._credits(), 999)


class ConcurrentReconciliationTests(unittest.TestCase):
    rounds = 10
    deliveries = 16

    def _fresh_job(self):
        store = InMemoryStore()
        ledger = LedgerService(store)
        _subscribe(store, "owner-1", Plan.BASIC)
        self.assertTrue(ledger.try_debit(user_id="owner-1", kind=JobKind.GENERATION).ok)
        job = store.insert_job(
            owner_id="owner-1",
            external_id="ext-race",
            kind=JobKind.GENERATION,
            resource_cost=cost_for(JobKind.GENERATION),
            params={},
        )
        engine = ReconciliationEngine(store, ledger, refund_on_failure=True)
        return store, engine, job

    @staticmethod
    def _failed_event() -> PredictionEvent:
        return PredictionEvent(
            external_id="ext-race",
            reported_status=JobStatus.FAILED,
            provider_status="failed",
            error="worker crashed",
        )

    def test_concurrent_failure_deliveries_refund_exactly_once(self) -> None:
        for round_number in range(self.rounds):
            with self.subTest(round=round_number):
                store, engine, job = self._fresh_job()
                event = self._failed_event()

                with ThreadPoolExecutor(max_workers=8) as pool:
                    results = list(pool.map(lambda _: engine.apply(event), range(self.deliveries)))

                outcomes = [result.outcome for result in results]
                self.assertEqual(outcomes.count(WebhookOutcome.APPLIED), 1)
                self.assertEqual(outcomes.count(WebhookOutcome.DUPLICATE), self.deliveries - 1)
                stored = store.get_job(job.id)
                self.assertEqual(stored.status, JobStatus.FAILED)
                self.assertTrue(stored.refunded)
                self.assertEqual(store.get_ledger("owner-1").credits_remaining, 50)

    def test_cancel_racing_failure_delivery_settles_once(self) -> None:
        for round_number in range(self.rounds):
            with self.subTest(round=round_number):
                store, engine, job = self._fresh_job()
                event = self._failed_event()

                def _race(index: int) -> str:
                    if index == 0:
                        try:
                            engine.cancel(job.id)
                        except ApiError as exc:
                            self.assertEqual(exc.status_code, 409)
                            return "cancel_rejected"
                        return "cancel_applied"
                    return engine.apply(event).outcome.value

                with ThreadPoolExecutor(max_workers=8) as pool:
                    results = list(pool.map(_race, range(self.deliveries)))

                applied = results.count("cancel_applied") + results.count(WebhookOutcome.APPLIED.value)
                self.assertEqual(applied, 1)
                stored = store.get_job(job.id)
                self.assertIn(stored.status, (JobStatus.FAILED, JobStatus.CANCELED))
                self.assertTrue(stored.refunded)
                self.assertEqual(store.get_ledger("owner-1").credits_remaining, 50)


if __name__ == "__main__":
    unittest.main()
