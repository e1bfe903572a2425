import io

import pytest

from batch_analyzer.exceptions import (
    FileTooLarge, InvalidMediaType, MalformedMultipart, TooManyFiles
)
from batch_analyzer.ingest import (
    BufferedBody, IngestLimits, StreamIngester, StreamedBody, ingest, parse_boundary
)
from conftest import build_multipart, image_part, multipart_content_type

LIMITS = IngestLimits(max_file_bytes=1024, max_files=3)


def _streamed(body, chunk_size=7):
    return StreamedBody(io.BytesIO(body), chunk_size=chunk_size)


def test_buffered_and_streamed_bodies_yield_same_files():
    body = build_multipart([image_part(1), image_part(2, 'image/png'), image_part(3)])

    buffered = ingest(BufferedBody(body), multipart_content_type(), LIMITS)
    # Tiny chunks split headers, bodies and boundaries across reads
    streamed = ingest(_streamed(body, chunk_size=5), multipart_content_type(), LIMITS)

    assert buffered == streamed
    assert [f.content for f in buffered] == [b'image-bytes-1', b'image-bytes-2', b'image-bytes-3']
    assert [f.media_type for f in buffered] == ['image/jpeg', 'image/png', 'image/jpeg']
    assert [f.original_name for f in buffered] == ['photo_1.jpg', 'photo_2.jpg', 'photo_3.jpg']
    assert all(f.field_name == 'image' for f in buffered)


def test_binary_content_with_crlf_is_preserved():
    payload = b'\xff\xd8\xff\r\n--not-a-boundary\r\n\x00\x01\r\n'
    body = build_multipart([('image', 'raw.jpg', 'image/jpeg', payload)])

    files = ingest(_streamed(body, chunk_size=3), multipart_content_type(), LIMITS)

    assert len(files) == 1
    assert files[0].content == payload
    assert files[0].size == len(payload)


def test_plain_form_fields_are_skipped():
    body = build_multipart([
        ('note', None, None, b'hello'),
        image_part(1),
    ])

    files = ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    assert [f.content for f in files] == [b'image-bytes-1']


def test_missing_filename_falls_back_to_field_name():
    body = build_multipart([('image', '', 'image/gif', b'GIF89a')])

    files = ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    assert files[0].original_name == 'image'


def test_zero_files_is_an_empty_result_not_an_error():
    body = build_multipart([('note', None, None, b'no uploads here')])

    assert ingest(BufferedBody(body), multipart_content_type(), LIMITS) == []


def test_media_type_parameters_are_ignored_when_matching():
    body = build_multipart([('image', 'a.png', 'IMAGE/PNG; charset=binary', b'png')])

    files = ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    assert files[0].media_type == 'image/png'


def test_non_image_part_is_rejected_once():
    body = build_multipart([
        image_part(1),
        ('image', 'notes.txt', 'text/plain', b'first bad part'),
        ('image', 'data.json', 'application/json', b'second bad part'),
    ])

    with pytest.raises(InvalidMediaType) as exc_info:
        ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    # Only the first invalid part is reported
    assert 'text/plain' in str(exc_info.value)
    assert 'application/json' not in str(exc_info.value)


def test_part_without_content_type_is_not_an_image():
    body = build_multipart([('image', 'mystery.bin', None, b'???')])

    with pytest.raises(InvalidMediaType):
        ingest(BufferedBody(body), multipart_content_type(), LIMITS)


def test_rejected_stream_is_drained():
    body = build_multipart([
        ('image', 'notes.txt', 'text/plain', b'bad'),
        image_part(1, content=b'x' * 500),
        image_part(2, content=b'y' * 500),
    ])
    stream = io.BytesIO(body)

    with pytest.raises(InvalidMediaType):
        ingest(StreamedBody(stream, chunk_size=16), multipart_content_type(), LIMITS)

    assert stream.tell() == len(body)


def test_oversized_file_is_rejected():
    body = build_multipart([image_part(1, content=b'z' * 1025)])

    with pytest.raises(FileTooLarge):
        ingest(_streamed(body, chunk_size=100), multipart_content_type(), LIMITS)


def test_file_at_exact_limit_is_accepted():
    body = build_multipart([image_part(1, content=b'z' * 1024)])

    files = ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    assert files[0].size == 1024


def test_too_many_files_is_a_single_error():
    body = build_multipart([image_part(i) for i in range(1, 5)])

    with pytest.raises(TooManyFiles) as exc_info:
        ingest(BufferedBody(body), multipart_content_type(), LIMITS)

    assert 'max 3' in str(exc_info.value)


def test_truncated_body_is_malformed():
    body = build_multipart([image_part(1)], close=False)
    # Cut the last part short: no closing boundary ever arrives
    body = body[:-10]

    with pytest.raises(MalformedMultipart):
        ingest(_streamed(body), multipart_content_type(), LIMITS)


def test_empty_body_is_malformed():
    with pytest.raises(MalformedMultipart):
        ingest(BufferedBody(b''), multipart_content_type(), LIMITS)


def test_boundary_is_required():
    with pytest.raises(MalformedMultipart):
        parse_boundary('multipart/form-data')

    with pytest.raises(MalformedMultipart):
        parse_boundary('application/json')

    assert parse_boundary('multipart/form-data; boundary="abc123"') == b'abc123'


def test_ingester_can_be_reused_across_requests():
    ingester = StreamIngester(LIMITS)
    body = build_multipart([image_part(1)])

    first = ingester.ingest(BufferedBody(body), multipart_content_type())
    second = ingester.ingest(BufferedBody(body), multipart_content_type())

    assert first == second
    assert len(first) == 1
