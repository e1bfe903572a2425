"""
Pytest configuration file.
Adds the project root to Python path so 'batch_analyzer' package can be imported.
"""
import sys
import os
import tempfile
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Set environment variables for testing before any batch_analyzer imports
os.environ.setdefault('OPENAI_API_KEY', '')
os.environ.setdefault('LOG_DIR', os.path.join(tempfile.gettempdir(), 'batch_analyzer_test_logs'))
os.environ.setdefault('MAX_FILE_SIZE', '10485760')
os.environ.setdefault('MAX_FILES', '20')

BOUNDARY = 'testboundary7MA4YWxkTrZu0gW'


def build_multipart(parts, boundary=BOUNDARY, close=True):
    """Encode ``parts`` as a multipart/form-data body.

    Each part is ``(field_name, filename, content_type, content)``; a None
    filename makes a plain form field, a None content_type omits the header.
    """
    body = b''
    for name, filename, content_type, content in parts:
        body += f'--{boundary}\r\n'.encode()
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        body += disposition.encode() + b'\r\n'
        if content_type is not None:
            body += f'Content-Type: {content_type}\r\n'.encode()
        body += b'\r\n' + content + b'\r\n'
    if close:
        body += f'--{boundary}--\r\n'.encode()
    return body


def multipart_content_type(boundary=BOUNDARY):
    return f'multipart/form-data; boundary={boundary}'


def image_part(index, content_type='image/jpeg', content=None):
    return ('image', f'photo_{index}.jpg', content_type, content or f'image-bytes-{index}'.encode())


class FakeVisionClient:
    """Stands in for the vision collaborator; answers are keyed by image bytes"""

    def __init__(self, answers=None, default=None):
        self.answers = answers or {}
        self.default = default or {'type': 'unknown', 'confidence': 0, 'data': {}}
        self.calls = []

    async def analyze(self, image_bytes, media_type):
        self.calls.append((image_bytes, media_type))
        answer = self.answers.get(image_bytes, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def fake_vision():
    return FakeVisionClient()
