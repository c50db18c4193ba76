import hashlib
import hmac

from novapulse.webhooks.signing import SIGNATURE_PREFIX, encode_payload, sign_payload, verify_signature


def test_signature_matches_hmac_of_raw_body():
    body = encode_payload({"b": 2, "a": {"nested": True}})
    expected = hmac.new(b"shh", body.encode("utf-8"), hashlib.sha256).hexdigest()

    signature = sign_payload("shh", body)

    assert signature == f"{SIGNATURE_PREFIX}{expected}"
    assert verify_signature("shh", body, signature)
    assert verify_signature("shh", body.encode("utf-8"), expected)


def test_signature_rejects_tampering_and_wrong_secret():
    body = encode_payload({"task_id": 1})
    signature = sign_payload("shh", body)

    assert not verify_signature("other", body, signature)
    assert not verify_signature("shh", encode_payload({"task_id": 2}), signature)
    assert not verify_signature("shh", body, None)
    assert not verify_signature("shh", body, "")


def test_encoded_payload_is_canonical():
    assert encode_payload({"b": 1, "a": 2}) == encode_payload({"a": 2, "b": 1}) == '{"a":2,"b":1}'
