import pytest

from sealctl.errors import TokenParseError
from sealctl.modules.kubernetes.token import (
    decode_bootstrap_output,
    decode_join_command,
    parse_certificate_key,
)
from conftest import CA_HASH, CERT_KEY, INIT_OUTPUT, UPLOAD_CERTS_OUTPUT

CAPTURED_OUTPUT = (
    "Your Kubernetes control-plane has initialized successfully! ... "
    "kubeadm join 192.168.0.200:6443 --token 9vr73a.a8uxyaju799qwdjv "
    "--discovery-token-ca-cert-hash sha256:7c2e69131a36ae2a042a339b33381c6d0d43887e2de83720eff5359e26aec866 "
    "--experimental-control-plane "
    "--certificate-key f8902e114ef118304e561c3ecd4d0b543adc226b7a07f675f56564185ffe0c07extra ... "
    "Please note that the certificate-key gives access to cluster sensitive data"
)


def test_decode_captured_output():
    token = decode_bootstrap_output(CAPTURED_OUTPUT)
    assert token.token == "9vr73a.a8uxyaju799qwdjv"
    assert token.ca_cert_hashes == (
        "sha256:7c2e69131a36ae2a042a339b33381c6d0d43887e2de83720eff5359e26aec866",
    )
    assert token.certificate_key == "f8902e114ef118304e561c3ecd4d0b543adc226b7a07f675f56564185ffe0c07"
    assert len(token.certificate_key) == 64
    assert token.api_server_endpoint == "192.168.0.200:6443"


def test_decode_multiline_output_with_continuations():
    token = decode_bootstrap_output(INIT_OUTPUT)
    assert token.token == "9vr73a.a8uxyaju799qwdjv"
    assert token.ca_cert_hashes == (CA_HASH,)
    assert token.certificate_key == CERT_KEY
    assert token.api_server_endpoint == "apiserver.cluster.local:6443"


def test_only_first_join_command_is_used():
    output = (
        f"kubeadm join a:6443 --token first.token --control-plane --certificate-key {CERT_KEY}\n"
        "Please note that the certificate-key gives access to cluster sensitive data\n"
        "kubeadm join a:6443 --token second.token\n"
    )
    token = decode_bootstrap_output(output)
    assert token.token == "first.token"
    assert token.certificate_key == CERT_KEY


def test_missing_join_marker_is_a_parse_error():
    with pytest.raises(TokenParseError):
        decode_bootstrap_output("error execution phase preflight: [preflight] Some fatal errors occurred")


def test_missing_terminator_parses_to_end():
    token = decode_bootstrap_output("kubeadm join 10.0.0.1:6443 --token abc.def")
    assert token.token == "abc.def"


def test_absent_flags_leave_zero_values():
    token = decode_join_command("10.0.0.1:6443 --discovery-token-unsafe-skip-ca-verification")
    assert token.is_empty
    assert token.ca_cert_hashes == ()
    assert token.certificate_key == ""
    assert token.api_server_endpoint == "10.0.0.1:6443"


def test_multiple_ca_hashes_are_collected():
    token = decode_join_command(
        "kubeadm join 10.0.0.1:6443 --token a.b "
        "--discovery-token-ca-cert-hash sha256:aaa --discovery-token-ca-cert-hash=sha256:bbb"
    )
    assert token.ca_cert_hashes == ("sha256:aaa", "sha256:bbb")


def test_token_string_masks_secrets():
    token = decode_bootstrap_output(CAPTURED_OUTPUT)
    assert "a8uxyaju799qwdjv" not in str(token)
    assert CERT_KEY not in str(token)


def test_parse_certificate_key():
    assert parse_certificate_key(UPLOAD_CERTS_OUTPUT) == "0123456789abcdef" * 4


def test_parse_certificate_key_without_key():
    with pytest.raises(TokenParseError):
        parse_certificate_key("[upload-certs] Skipping phase")
