import json

import pytest

from docsorter.services.classification_engine import ClassificationEngine
from docsorter.services.heuristic_extractor import ClientDirectory, HeuristicExtractor
from docsorter.services.inference_client import InferenceClient
from docsorter.services.inference_gateway import InferenceGateway
from docsorter.services.language_detector import LanguageDetector
from docsorter.services.result_cache import ResultCache
from docsorter.services.batch_driver import BatchDriver
from docsorter.services.signature_detector import NullSignatureDetector
from docsorter.services.watermark_detector import WatermarkDetector


INVOICE_TEXT = """INVOICE
Invoice Number: INV-2024-001
Invoice Date: 01/15/2024
Bill To: Acme Corp
Description: Consulting services
Total Amount: $10,500.25
Amount Due: $10,500.25
Payment due within 30 days"""

VAGUE_TEXT = "Notes from the meeting with Blackstane about the next steps and open questions."

AI_METADATA = {
    "clientName": "Blackstone",
    "clientConfidence": 0.92,
    "date": "2024-03-01",
    "dateConfidence": 0.85,
    "docType": "Report",
    "docTypeConfidence": 0.9,
    "amount": None,
    "amountConfidence": 0.0,
    "title": "Meeting notes",
    "titleConfidence": 0.8,
    "snippets": ["Notes from the meeting with Blackstane"],
}


def chat_completion(content, model="gpt-3.5-turbo"):
    """OpenAI-shaped chat completion body."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return {
        "id": "chatcmpl-test",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 40, "total_tokens": 160},
    }


@pytest.fixture
def invoice_text():
    return INVOICE_TEXT


@pytest.fixture
def client_directory():
    return ClientDirectory(["Acme Corp", "Blackstone", "Globex Corporation"])


@pytest.fixture
def inference_client():
    """Client that never sleeps between retries."""
    return InferenceClient(
        base_url="http://inference.test/v1",
        api_key="test-key",
        model="test-model",
        timeout=5.0,
        max_retries=3,
        base_delay=0,
        max_delay=0,
        max_concurrent=3,
    )


@pytest.fixture
def result_cache():
    return ResultCache(max_size=100, snapshot_path=None)


@pytest.fixture
def gateway(inference_client, result_cache):
    return InferenceGateway(inference_client, result_cache, confidence_threshold=0.5)


@pytest.fixture
def engine(client_directory, gateway):
    """Engine with real detectors except OCR."""
    return ClassificationEngine(
        extractor=HeuristicExtractor(client_directory),
        gateway=gateway,
        batch_driver=BatchDriver(group_size=3, delay_ms=0),
        language_detector=LanguageDetector(),
        watermark_detector=WatermarkDetector(min_occurrences=2, page_overlap_threshold=0.3),
        signature_detector=NullSignatureDetector(),
    )
