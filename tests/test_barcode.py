import hashlib
import hmac
import uuid

from services.barcode_service import BARCODE_RE, generate_barcode, is_barcode, verify_barcode

SECRET = "barcode-secret"


def test_barcode_is_13_uppercase_base36_chars():
    for _ in range(50):
        barcode = generate_barcode("202603101200", str(uuid.uuid4()), SECRET)
        assert BARCODE_RE.match(barcode)


def test_barcode_encodes_high_64_bits_of_hmac():
    slip_id = "abcdef12-3456-7890-abcd-ef1234567890"
    barcode = generate_barcode("202603101200", slip_id, SECRET)
    digest = hmac.new(SECRET.encode(), b"202603101200_ABCDEF12", hashlib.sha256).digest()
    assert int(barcode, 36) == int.from_bytes(digest[:8], "big")


def test_barcode_depends_on_round_prefix_and_secret():
    slip_id = str(uuid.uuid4())
    base = generate_barcode("202603101200", slip_id, SECRET)
    assert base == generate_barcode("202603101200", slip_id, SECRET)
    assert base != generate_barcode("202603101205", slip_id, SECRET)
    assert base != generate_barcode("202603101200", slip_id, "other-secret")


def test_verify_barcode():
    slip_id = str(uuid.uuid4())
    barcode = generate_barcode("202603101200", slip_id, SECRET)
    assert verify_barcode(barcode, "202603101200", slip_id, SECRET)
    assert not verify_barcode(barcode, "202603101205", slip_id, SECRET)
    assert not verify_barcode(barcode.lower(), "202603101200", slip_id, SECRET)
    assert not is_barcode(slip_id)
