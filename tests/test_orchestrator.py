import asyncio
import types

import pytest

from batch_analyzer.exceptions import CollaboratorError, NoFilesProvided, UpstreamFormatError
from batch_analyzer.models import OutcomeKind, UploadedFile
from batch_analyzer.orchestrator import BatchOrchestrator, image_id_for
from conftest import FakeVisionClient

TICKET = {
    'type': 'ticket',
    'confidence': 0.9,
    'data': {'ticket': {'currency': 'EUR'}, 'totals': {'total': 10}},
}
VEHICLE = {
    'type': 'vehicle',
    'confidence': 0.8,
    'data': {'vehicle': {'license_plate': '1234 abc', 'vehicle_type': 'car'}},
}


def _file(content, name=None):
    return UploadedFile(
        field_name='image',
        original_name=name or f'{content.decode()}.jpg',
        media_type='image/jpeg',
        content=content,
    )


def test_image_ids_follow_upload_position():
    assert image_id_for(0) == 'img_1'
    assert image_id_for(19) == 'img_20'


def test_results_keep_upload_order_when_calls_finish_out_of_order():
    delays = {b'a': 0.05, b'b': 0.02, b'c': 0.0}
    finished = []

    async def analyze(image_bytes, media_type):
        await asyncio.sleep(delays[image_bytes])
        finished.append(image_bytes)
        return {'type': 'unknown', 'confidence': 0, 'data': {'raw_text': image_bytes.decode()}}

    orchestrator = BatchOrchestrator(analyze)
    outcomes = asyncio.run(orchestrator.run([_file(b'a'), _file(b'b'), _file(b'c')]))

    assert finished == [b'c', b'b', b'a']
    assert [o.image_id for o in outcomes] == ['img_1', 'img_2', 'img_3']
    assert [o.payload['raw_text'] for o in outcomes] == ['a', 'b', 'c']


def test_one_failed_call_does_not_fail_the_batch():
    vision = FakeVisionClient(answers={
        b'first': TICKET,
        b'second': CollaboratorError('Vision service request failed with status 503'),
        b'third': VEHICLE,
    })
    orchestrator = BatchOrchestrator(vision.analyze)

    outcomes = asyncio.run(orchestrator.run(
        [_file(b'first'), _file(b'second'), _file(b'third')]))

    assert [o.kind for o in outcomes] == [
        OutcomeKind.TICKET, OutcomeKind.ERROR, OutcomeKind.VEHICLE]
    failed = outcomes[1]
    assert failed.image_id == 'img_2'
    assert failed.confidence == 0.0
    assert failed.payload == {'warnings': ['Vision service request failed with status 503']}
    assert outcomes[2].payload['vehicle']['license_plate'] == '1234ABC'
    assert len(vision.calls) == 3


def test_every_call_failing_still_yields_one_outcome_per_file():
    vision = FakeVisionClient(default=CollaboratorError('down'))
    orchestrator = BatchOrchestrator(vision.analyze)

    outcomes = asyncio.run(orchestrator.run([_file(b'x'), _file(b'y')]))

    assert len(outcomes) == 2
    assert all(o.is_error for o in outcomes)


def test_unusable_collaborator_answer_becomes_an_error_outcome():
    vision = FakeVisionClient(answers={
        b'bad-json': UpstreamFormatError('Model response is not a JSON object: nope'),
        b'bad-shape': {'type': 'ticket', 'confidence': 1, 'data': {'items': 'not a list'}},
        b'not-a-dict': ['ticket'],
    })
    orchestrator = BatchOrchestrator(vision.analyze)

    outcomes = asyncio.run(orchestrator.run(
        [_file(b'bad-json'), _file(b'bad-shape'), _file(b'not-a-dict')]))

    assert all(o.is_error for o in outcomes)
    assert 'not a JSON object' in outcomes[0].payload['warnings'][0]
    assert 'expected shape' in outcomes[1].payload['warnings'][0]


def test_unrecognised_type_is_unknown_and_confidence_is_clamped():
    vision = FakeVisionClient(answers={
        b'odd': {'type': 'receipt-ish', 'confidence': 7, 'data': {}},
        b'neg': {'type': 'Vehicle', 'confidence': -1, 'data': {}},
        b'missing': {'data': None},
    })
    orchestrator = BatchOrchestrator(vision.analyze)

    outcomes = asyncio.run(orchestrator.run([_file(b'odd'), _file(b'neg'), _file(b'missing')]))

    assert [o.kind for o in outcomes] == [
        OutcomeKind.UNKNOWN, OutcomeKind.VEHICLE, OutcomeKind.UNKNOWN]
    assert [o.confidence for o in outcomes] == [1.0, 0.0, 0.0]


def test_empty_batch_is_rejected():
    orchestrator = BatchOrchestrator(FakeVisionClient().analyze)

    with pytest.raises(NoFilesProvided):
        asyncio.run(orchestrator.run([]))


def test_slow_call_times_out_as_error_outcome():
    async def analyze(image_bytes, media_type):
        if image_bytes == b'slow':
            await asyncio.sleep(5)
        return TICKET

    orchestrator = BatchOrchestrator(analyze, timeout=0.05)
    outcomes = asyncio.run(orchestrator.run([_file(b'fast'), _file(b'slow')]))

    assert outcomes[0].kind is OutcomeKind.TICKET
    assert outcomes[1].is_error
    assert outcomes[1].payload['warnings'] == ['Image analysis timed out after 0.05s']


def test_concurrency_cap_limits_calls_in_flight():
    in_flight = 0
    peak = 0

    async def analyze(image_bytes, media_type):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return TICKET

    files = [_file(f'f{i}'.encode()) for i in range(6)]

    capped = BatchOrchestrator(analyze, max_concurrent=2)
    asyncio.run(capped.run(files))
    assert peak == 2

    peak = 0
    unbounded = BatchOrchestrator(analyze)
    asyncio.run(unbounded.run(files))
    assert peak == 6


def test_unexpected_exception_details_are_hidden_by_default():
    vision = FakeVisionClient(default=RuntimeError('secret token abc123 leaked'))

    hidden = BatchOrchestrator(vision.analyze)
    outcome = asyncio.run(hidden.run([_file(b'x')]))[0]
    assert outcome.payload['warnings'] == ['Image analysis failed (RuntimeError)']

    exposed = BatchOrchestrator(vision.analyze, expose_error_details=True)
    outcome = asyncio.run(exposed.run([_file(b'x')]))[0]
    assert outcome.payload['warnings'] == ['secret token abc123 leaked']


def test_from_config_reads_call_policy():
    cfg = types.SimpleNamespace(
        analysis_timeout=12.5, max_concurrent_requests=4, expose_error_details=True)

    orchestrator = BatchOrchestrator.from_config(FakeVisionClient().analyze, cfg)

    assert orchestrator.timeout == 12.5
    assert orchestrator.max_concurrent == 4
    assert orchestrator.expose_error_details is True
