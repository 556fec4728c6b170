import json

import pytest

from credvault.core.exceptions import CryptoError, ValidationFailed
from credvault.infrastructure.ledger.interface import RegistrationRequest
from credvault.logic.verification import extract_fingerprint_from_qr
from tests.conftest import build_settings
from tests.factories import ADMIN, HELLO_FP, ISSUER, OTHER, OWNER, VIEWER


@pytest.fixture
def settings(tmp_path):
    return build_settings(tmp_path, SUSPICIOUS_THRESHOLD=3, LEDGER_EXPLORER_URL="https://explorer.example.org")


async def verify(client, headers=None):
    return (await client.get(f"/v1/credentials/verify/{HELLO_FP}", headers=headers or {})).json()


class TestQRPayload:

    def test_bare_fingerprint(self):
        assert extract_fingerprint_from_qr(HELLO_FP.upper()) == HELLO_FP

    def test_json_payload(self):
        assert extract_fingerprint_from_qr(json.dumps({"fingerprint": HELLO_FP, "txId": "0x1"})) == HELLO_FP

    def test_verification_url(self):
        url = f"https://verify.example.org/verify?hash={HELLO_FP}&tx=0xabc"
        assert extract_fingerprint_from_qr(url) == HELLO_FP

    @pytest.mark.parametrize("payload", ["", "hello", "{broken", '{"txId": "0x1"}', "https://x.org/verify?tx=1"])
    def test_unrecognised_payloads(self, payload):
        with pytest.raises(ValidationFailed):
            extract_fingerprint_from_qr(payload)


@pytest.mark.asyncio
async def test_disclosure_depends_on_access(client, register, auth_headers):
    await register()
    await client.post(
        f"/v1/credentials/{HELLO_FP}/access/grant", json={"walletKey": VIEWER}, headers=auth_headers(OWNER)
    )

    anonymous = await verify(client)
    assert set(anonymous) == {"valid", "fingerprint", "ledgerAnchor", "ledgerCrossChecked"}

    stranger = await verify(client, auth_headers(OTHER))
    assert "recordSummary" not in stranger

    viewer = await verify(client, auth_headers(VIEWER))
    assert viewer["recordSummary"]["ownerKey"] == OWNER[:8] + "…"
    assert viewer["recordSummary"]["metadata"]["recipientName"] == "Jane"

    owner = await verify(client, auth_headers(OWNER))
    assert owner["recordSummary"]["ownerKey"] == OWNER

    admin = await verify(client, auth_headers(ADMIN))
    assert admin["recordSummary"]["ownerKey"] == OWNER
    assert admin["recordSummary"]["issuerKey"] == ISSUER


@pytest.mark.asyncio
async def test_anchor_includes_explorer_link(client, register):
    await register()
    anchor = (await verify(client))["ledgerAnchor"]
    assert anchor["explorerUrl"] == f"https://explorer.example.org/tx/{anchor['txId']}"
    assert anchor["anchorTimestamp"] > 0


@pytest.mark.asyncio
async def test_unreachable_ledger_falls_back_to_local_anchor(client, register, ledger_client):
    await register()
    ledger_client.reachable = False

    result = await verify(client)
    assert result["valid"] is True
    assert result["ledgerCrossChecked"] is False


@pytest.mark.asyncio
async def test_ledger_only_anchor(client, ledger_client):
    await ledger_client.submit_registration(
        RegistrationRequest(HELLO_FP, "local_" + "0" * 64, "0x" + "0" * 64, OWNER, "degree")
    )
    response = await client.get(f"/v1/credentials/verify/{HELLO_FP}")
    assert response.status_code == 200
    assert response.json()["valid"] is True
    assert response.json()["reason"] == "LEDGER_ONLY"


@pytest.mark.asyncio
async def test_divergent_anchor_is_flagged(client, register, ledger_client):
    await register()
    ledger_client.documents[HELLO_FP]["tx_id"] = "0x" + "f" * 64

    result = await verify(client)
    assert result["valid"] is False
    assert result["reason"] == "ANCHOR_MISMATCH"


@pytest.mark.asyncio
async def test_deactivated_credential_is_invalid(client, register, auth_headers, container):
    await register()
    response = await client.post(
        f"/v1/credentials/{HELLO_FP}/deactivate",
        json={"reason": "Issued with a wrong grade"},
        headers=auth_headers(ISSUER),
    )
    assert response.status_code == 200
    assert response.json()["active"] is False
    assert response.json()["deactivatedBy"] == ISSUER

    result = await verify(client)
    assert result["valid"] is False
    assert result["reason"] == "DEACTIVATED"

    again = await client.post(
        f"/v1/credentials/{HELLO_FP}/deactivate",
        json={"reason": "Issued with a wrong grade"},
        headers=auth_headers(OWNER),
    )
    assert again.status_code == 409
    assert again.json()["error"] == "ALREADY_DEACTIVATED"

    # Las credenciales desactivadas salen del listado
    listed = await client.get("/v1/credentials", headers=auth_headers(OWNER))
    assert listed.json()["totalItems"] == 0


@pytest.mark.asyncio
async def test_deactivation_rules(client, register, auth_headers):
    await register()
    short = await client.post(
        f"/v1/credentials/{HELLO_FP}/deactivate", json={"reason": "too short"}, headers=auth_headers(OWNER)
    )
    assert short.status_code == 400

    stranger = await client.post(
        f"/v1/credentials/{HELLO_FP}/deactivate",
        json={"reason": "I do not like this credential"},
        headers=auth_headers(OTHER),
    )
    assert stranger.status_code == 403


@pytest.mark.asyncio
async def test_suspicious_activity_warning(client, register, auth_headers):
    await register()
    # Fallos repetidos contra la huella: la credencial desactivada no verifica
    await client.post(
        f"/v1/credentials/{HELLO_FP}/deactivate",
        json={"reason": "Revoked by the issuing authority"},
        headers=auth_headers(ISSUER),
    )
    for _ in range(3):
        await verify(client)

    anonymous = await verify(client)
    assert "warning" not in anonymous

    owner = await verify(client, auth_headers(OWNER))
    assert owner["warning"] == "SUSPICIOUS_ACTIVITY"

    trail = await client.get(f"/v1/credentials/{HELLO_FP}/audit", headers=auth_headers(OWNER))
    assert trail.json()["summary"]["suspiciousActivity"] is True

    flagged = await client.get("/v1/admin/suspicious-activity", headers=auth_headers(ADMIN))
    assert flagged.status_code == 200
    body = flagged.json()
    assert body["threshold"] == 3
    assert [e["fingerprint"] for e in body["items"]] == [HELLO_FP]
    assert body["items"][0]["failedAttempts"] >= 3

    assert (await client.get("/v1/admin/suspicious-activity", headers=auth_headers(OWNER))).status_code == 403


@pytest.mark.asyncio
async def test_pending_record_is_not_valid(client, register, ledger_client):
    ledger_client.reachable = False
    await register()
    ledger_client.reachable = True

    result = await verify(client)
    assert result["valid"] is False
    assert result["reason"] == "PENDING_ANCHOR"


@pytest.mark.asyncio
async def test_failed_registration_is_reported(client, register, container, monkeypatch):
    def broken_seal(plaintext):
        raise CryptoError()

    monkeypatch.setattr(container.cipher, "seal", broken_seal)
    assert (await register()).status_code == 500

    result = await verify(client)
    assert result["valid"] is False
    assert result["reason"] == "REGISTRATION_FAILED"
