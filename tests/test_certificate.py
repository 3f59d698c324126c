import ipaddress

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from quicnet.certificate import (
    CertificateFingerprint,
    GenerateSelfSigned,
    LoadFromFile,
    LoadFromFileOrGenerateSelfSigned,
    generate_self_signed_certificate,
    read_cert_from_files,
    retrieve_certificate,
    write_cert_to_files,
)
from quicnet.errors import EndpointCertificateError, EndpointStartError

SERVER_IP = "::1"


def test_fingerprint_of_empty_der():
    fingerprint = CertificateFingerprint.from_der(b"")
    assert fingerprint.to_base64() == "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpZLZG3hSuFU="
    assert str(fingerprint) == fingerprint.to_base64()


def test_fingerprint_requires_32_bytes():
    with pytest.raises(ValueError):
        CertificateFingerprint(b"\x00" * 31)


def test_generated_certificate_matches_fingerprint():
    server_cert, _, _ = generate_self_signed_certificate(SERVER_IP)
    assert len(server_cert.cert_chain) == 1
    assert server_cert.fingerprint == CertificateFingerprint.from_der(
        server_cert.cert_chain[0]
    )
    assert len(server_cert.fingerprint.to_base64()) == 44


def test_generated_certificate_has_ip_san():
    server_cert, _, _ = generate_self_signed_certificate(SERVER_IP)
    cert = x509.load_der_x509_certificate(server_cert.cert_chain[0])
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address(SERVER_IP)]


def test_generated_certificate_has_dns_san():
    server_cert, _, _ = generate_self_signed_certificate("localhost")
    cert = x509.load_der_x509_certificate(server_cert.cert_chain[0])
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["localhost"]


def test_generated_key_is_pkcs8_der():
    server_cert, _, _ = generate_self_signed_certificate("localhost")
    key = serialization.load_der_private_key(server_cert.priv_key, None)
    cert = x509.load_der_x509_certificate(server_cert.cert_chain[0])
    assert key.public_key().public_numbers() == cert.public_key().public_numbers()


def test_write_then_read_roundtrip(tmp_path):
    server_cert, cert_pem, key_pem = generate_self_signed_certificate("localhost")
    cert_file = tmp_path / "nested" / "cert.pem"
    key_file = tmp_path / "nested" / "key.pem"
    write_cert_to_files(cert_pem, key_pem, str(cert_file), str(key_file))
    loaded = read_cert_from_files(str(cert_file), str(key_file))
    assert loaded.fingerprint.to_base64() == server_cert.fingerprint.to_base64()
    assert loaded.cert_chain == server_cert.cert_chain
    assert loaded.priv_key == server_cert.priv_key


def test_load_from_file_mode(tmp_path):
    server_cert, cert_pem, key_pem = generate_self_signed_certificate(SERVER_IP)
    cert_file, key_file = tmp_path / "cert.pem", tmp_path / "key.pem"
    write_cert_to_files(cert_pem, key_pem, str(cert_file), str(key_file))
    loaded = retrieve_certificate(LoadFromFile(str(cert_file), str(key_file)))
    assert loaded.fingerprint == server_cert.fingerprint


def test_load_from_missing_file_fails(tmp_path):
    mode = LoadFromFile(str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
    with pytest.raises(EndpointCertificateError):
        retrieve_certificate(mode)
    with pytest.raises(EndpointStartError):
        retrieve_certificate(mode)


def test_read_file_without_certificate_fails(tmp_path):
    _, _, key_pem = generate_self_signed_certificate("localhost")
    cert_file, key_file = tmp_path / "cert.pem", tmp_path / "key.pem"
    cert_file.write_bytes(b"nothing here\n")
    key_file.write_bytes(key_pem)
    with pytest.raises(EndpointCertificateError):
        read_cert_from_files(str(cert_file), str(key_file))


def test_read_invalid_key_fails(tmp_path):
    _, cert_pem, _ = generate_self_signed_certificate("localhost")
    cert_file, key_file = tmp_path / "cert.pem", tmp_path / "key.pem"
    cert_file.write_bytes(cert_pem)
    key_file.write_bytes(b"not a key")
    with pytest.raises(EndpointCertificateError):
        read_cert_from_files(str(cert_file), str(key_file))


def test_self_signed_certificates_differ_between_starts():
    first = retrieve_certificate(GenerateSelfSigned(SERVER_IP))
    second = retrieve_certificate(GenerateSelfSigned(SERVER_IP))
    assert first.fingerprint.to_base64() != second.fingerprint.to_base64()
    assert len(first.fingerprint.to_base64()) == len(second.fingerprint.to_base64())


def test_load_or_generate_saves_then_reloads(tmp_path):
    cert_file = str(tmp_path / "certs" / "cert.pem")
    key_file = str(tmp_path / "certs" / "key.pem")
    mode = LoadFromFileOrGenerateSelfSigned(cert_file, key_file, True, SERVER_IP)
    generated = retrieve_certificate(mode)
    assert (tmp_path / "certs" / "cert.pem").exists()
    reloaded = retrieve_certificate(mode)
    assert reloaded.fingerprint == generated.fingerprint


def test_load_or_generate_without_saving(tmp_path):
    cert_file = str(tmp_path / "cert.pem")
    key_file = str(tmp_path / "key.pem")
    mode = LoadFromFileOrGenerateSelfSigned(cert_file, key_file, False, SERVER_IP)
    first = retrieve_certificate(mode)
    assert not (tmp_path / "cert.pem").exists()
    second = retrieve_certificate(mode)
    assert first.fingerprint != second.fingerprint


def test_unknown_mode_rejected():
    with pytest.raises(TypeError):
        retrieve_certificate("generate")