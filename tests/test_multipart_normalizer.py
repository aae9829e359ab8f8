from __future__ import annotations

from receipt_nest.modules.intake.mime import (
    MultipartReader,
    decode_rfc2231_value,
    extract_boundary,
    normalize_inbound,
    parse_header_params,
    parse_multipart_form,
)

OPAQUE = bytes((i * 7) % 251 for i in range(500))


def test_form_field_and_jpeg_attachment_are_recovered(build_multipart):
    body = build_multipart(
        "XYZ",
        [
            ({"Content-Disposition": 'form-data; name="subject"'}, b"Lunch"),
            (
                {
                    "Content-Disposition": 'form-data; name="receipt"; filename="r.jpg"',
                    "Content-Type": "image/jpeg",
                },
                OPAQUE,
            ),
        ],
    )

    envelope = normalize_inbound(body, "multipart/form-data; boundary=XYZ")

    assert envelope.fields["subject"] == "Lunch"
    assert len(envelope.attachments) == 1
    attachment = envelope.attachments[0]
    assert attachment.file_name == "r.jpg"
    assert attachment.mime_type == "image/jpeg"
    assert attachment.size_bytes == 500
    assert attachment.data == OPAQUE
    assert attachment.field_name == "receipt"


def test_quoted_boundary_and_lf_framing():
    body = (
        b"--b1\n"
        b'Content-Disposition: form-data; name="to"\n'
        b"\n"
        b"alias@in.example.com\n"
        b"--b1\n"
        b'Content-Disposition: form-data; name="file"; filename="scan.pdf"\n'
        b"Content-Type: application/pdf\n"
        b"\n"
        b"%PDF-1.4 data\n"
        b"--b1--\n"
    )

    envelope = parse_multipart_form(body, 'multipart/form-data; boundary="b1"')

    assert envelope.fields == {"to": "alias@in.example.com"}
    assert [a.file_name for a in envelope.attachments] == ["scan.pdf"]
    assert envelope.attachments[0].data == b"%PDF-1.4 data"


def test_truncated_body_keeps_completed_parts(build_multipart):
    body = build_multipart(
        "XYZ",
        [({"Content-Disposition": 'form-data; name="subject"'}, b"Lunch")],
    ).replace(b"--XYZ--\r\n", b"--XYZ\r\n")
    body += (
        b'Content-Disposition: form-data; name="receipt"; filename="r.jpg"\r\n'
        b"Content-Type: image/jpeg\r\n\r\npartial bytes without a closing delimiter"
    )

    envelope = normalize_inbound(body, "multipart/form-data; boundary=XYZ")

    assert envelope.fields == {"subject": "Lunch"}
    assert envelope.attachments == []


def test_garbage_input_never_raises():
    assert normalize_inbound(b"\x00\xff--nope", "multipart/form-data; boundary=XYZ").fields == {}
    assert normalize_inbound(b"", "multipart/form-data").attachments == []
    assert normalize_inbound(b"--XYZ\r\nno header terminator", "multipart/form-data; boundary=XYZ").fields == {}


def test_folded_headers_are_joined():
    body = (
        b"--XYZ\r\n"
        b"Content-Disposition: form-data;\r\n"
        b'  name="receipt"; filename="folded.png"\r\n'
        b"Content-Type: image/png\r\n"
        b"\r\n"
        b"PNGDATA\r\n"
        b"--XYZ--\r\n"
    )

    parts = list(MultipartReader(body, "XYZ"))

    assert len(parts) == 1
    assert parts[0].disposition == 'form-data; name="receipt"; filename="folded.png"'
    assert parts[0].body == b"PNGDATA"


def test_parts_without_name_are_ignored(build_multipart):
    body = build_multipart(
        "XYZ",
        [
            ({"Content-Disposition": "form-data"}, b"orphan"),
            ({"Content-Disposition": 'form-data; name="from"'}, b"shop@store.com"),
        ],
    )

    envelope = parse_multipart_form(body, "multipart/form-data; boundary=XYZ")

    assert envelope.fields == {"from": "shop@store.com"}


def test_empty_and_oversized_attachments_are_skipped(build_multipart):
    body = build_multipart(
        "XYZ",
        [
            (
                {"Content-Disposition": 'form-data; name="a"; filename="empty.jpg"'},
                b"",
            ),
            (
                {"Content-Disposition": 'form-data; name="b"; filename="big.jpg"'},
                b"x" * 64,
            ),
            (
                {"Content-Disposition": 'form-data; name="c"; filename="ok.jpg"'},
                b"y" * 16,
            ),
        ],
    )

    envelope = parse_multipart_form(
        body, "multipart/form-data; boundary=XYZ", max_attachment_bytes=32
    )

    assert [a.file_name for a in envelope.attachments] == ["ok.jpg"]


def test_rfc2231_filename_is_decoded_then_sanitized(build_multipart):
    body = build_multipart(
        "XYZ",
        [
            (
                {
                    "Content-Disposition": "form-data; name=\"doc\"; filename*=UTF-8''caf%C3%A9.pdf",
                    "Content-Type": "application/pdf",
                },
                b"%PDF-1.7",
            )
        ],
    )

    envelope = parse_multipart_form(body, "multipart/form-data; boundary=XYZ")

    assert decode_rfc2231_value("UTF-8''caf%C3%A9.pdf") == "café.pdf"
    assert envelope.attachments[0].file_name == "caf_.pdf"


def test_header_params_handle_continuations_and_order():
    params = parse_header_params(
        "attachment; filename*0*=UTF-8''inv%C3%B6ice; filename*1=\"_2024.pdf\"; size=10"
    )
    assert params["filename"] == "invöice_2024.pdf"

    reordered = parse_header_params('form-data; filename="a.jpg"; name="receipt"')
    assert reordered["name"] == "receipt"
    assert reordered["filename"] == "a.jpg"


def test_boundary_extraction():
    assert extract_boundary('multipart/form-data; boundary="abc def"') == "abc def"
    assert extract_boundary("multipart/mixed; BOUNDARY=zz; charset=utf-8") == "zz"
    assert extract_boundary("application/json") is None
