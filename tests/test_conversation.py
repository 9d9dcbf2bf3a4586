import pytest

from otrpipe import crypto
from otrpipe import messages as m
from otrpipe.conversation import SecureConversation, SessionState
from otrpipe.errors import ProtocolViolation


def shuttle(a, b, a_out, b_out):
    """Deliver frames back and forth until both sides go quiet."""
    while a_out or b_out:
        next_b = []
        for frame in a_out:
            next_b.extend(b.receive(frame).to_send)
        next_a = []
        for frame in b_out:
            next_a.extend(a.receive(frame).to_send)
        a_out, b_out = next_a, next_b


@pytest.fixture
def keys():
    return crypto.generate_identity(), crypto.generate_identity()


@pytest.fixture
def pair(keys):
    a, b = SecureConversation(keys[0]), SecureConversation(keys[1])
    shuttle(a, b, a.send(a.QUERY_MESSAGE), b.send(b.QUERY_MESSAGE))
    return a, b


class TestHandshake:
    def test_both_sides_query(self, pair, keys):
        a, b = pair
        assert a.is_encrypted() and b.is_encrypted()
        assert a.peer_fingerprint() == crypto.fingerprint(keys[1].public_key())
        assert b.peer_fingerprint() == crypto.fingerprint(keys[0].public_key())

    def test_one_side_queries(self, keys):
        a, b = SecureConversation(keys[0]), SecureConversation(keys[1])
        shuttle(a, b, a.send(a.QUERY_MESSAGE), [])
        assert a.is_encrypted() and b.is_encrypted()

    def test_query_passes_through_in_plaintext(self, keys):
        assert SecureConversation(keys[0]).send(m.QUERY) == [b"?OTRP?"]

    def test_fingerprint_unavailable_before_encryption(self, keys):
        with pytest.raises(ProtocolViolation):
            SecureConversation(keys[0]).peer_fingerprint()

    def test_send_refused_before_encryption(self, keys):
        with pytest.raises(ProtocolViolation):
            SecureConversation(keys[0]).send(b"secret")

    def test_auth_before_hello_rejected(self, keys):
        a, b = SecureConversation(keys[0]), SecureConversation(keys[1])
        hello_b = b.receive(m.QUERY).to_send
        auth_from_a = a.receive(hello_b[0]).to_send[-1]
        fresh = SecureConversation(keys[1])
        with pytest.raises(ProtocolViolation):
            fresh.receive(auth_from_a)

    def test_low_order_handshake_key_rejected(self, keys):
        a = SecureConversation(keys[0])
        hello = m.pack(m.new_envelope(m.HELLO, eph=crypto.b64url_encode(bytes(32))))
        with pytest.raises(ProtocolViolation, match="Invalid handshake key"):
            a.receive(hello)
        assert not a.is_encrypted()

    def test_forged_auth_rejected(self, keys):
        mallory = crypto.generate_identity()
        a, b = SecureConversation(keys[0]), SecureConversation(keys[1])
        hello_b = b.receive(m.QUERY).to_send[0]
        out = a.receive(hello_b).to_send
        hello_a, auth_a = out[0], out[1]
        b.receive(hello_a)
        # Same sealed AUTH, but claiming a different identity.
        env = m.unpack(auth_a)
        inner = m.json_object(crypto.open_sealed(b._recv_key, 0, crypto.b64url_decode(env["body"]["ct"]), b"AUTH"))
        inner["identity"] = crypto.b64url_encode(crypto.public_bytes(mallory.public_key()))
        forged = m.pack(m.new_envelope(m.AUTH, ctr=0, ct=crypto.b64url_encode(
            crypto.seal(b._recv_key, 0, m.canonical_bytes(inner), b"AUTH"))))
        with pytest.raises(ProtocolViolation, match="authentication failed"):
            b.receive(forged)


class TestMessages:
    def test_data_both_ways(self, pair):
        a, b = pair
        [frame] = a.send(b"hello bob\n")
        got = b.receive(frame)
        assert got.plaintext == b"hello bob\n"
        assert got.encrypted and got.state is SessionState.ENCRYPTED
        [frame] = b.send(b"hi alice")
        assert a.receive(frame).plaintext == b"hi alice"

    def test_frames_are_delimiter_safe(self, pair):
        a, _ = pair
        for frame in a.send(b"line one\nline two\n") + a.end():
            assert b"\n" not in frame
            assert frame.startswith(m.PREFIX)

    def test_replay_rejected(self, pair):
        a, b = pair
        [frame] = a.send(b"once")
        b.receive(frame)
        with pytest.raises(ProtocolViolation, match="Replayed"):
            b.receive(frame)

    def test_tampering_rejected(self, pair):
        a, b = pair
        [frame] = a.send(b"pay 10")
        env = m.unpack(frame)
        ct = bytearray(crypto.b64url_decode(env["body"]["ct"]))
        ct[0] ^= 1
        env["body"]["ct"] = crypto.b64url_encode(bytes(ct))
        with pytest.raises(ProtocolViolation, match="authentication"):
            b.receive(m.pack(env))

    def test_counter_beyond_nonce_range_rejected(self, pair):
        _, b = pair
        ct = crypto.b64url_encode(bytes(32))
        frame = m.pack(m.new_envelope(m.DATA, ctr=2 ** 100, ct=ct))
        with pytest.raises(ProtocolViolation, match="counter out of range"):
            b.receive(frame)

    def test_garbage_rejected(self, pair):
        _, b = pair
        with pytest.raises(ProtocolViolation):
            b.receive(m.PREFIX + b"!!!not base64 json!!!")

    def test_plain_text_is_reported_unencrypted(self, keys):
        got = SecureConversation(keys[0]).receive(b"hello?")
        assert got.plaintext == b"hello?"
        assert not got.encrypted


class TestEnd:
    def test_end_is_authenticated_and_final(self, pair):
        a, b = pair
        frames = a.end()
        assert len(frames) == 1
        got = b.receive(frames[0])
        assert got.state is SessionState.ENDED
        assert not b.is_encrypted()
        with pytest.raises(ProtocolViolation):
            a.send(b"too late")

    def test_end_before_encryption_sends_nothing(self, keys):
        assert SecureConversation(keys[0]).end() == []
