"""Image classification capability and its Rekognition implementation."""

import logging
from abc import ABC, abstractmethod
from typing import List

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .errors import (
    ACCESS_DENIED_ERROR_CODES,
    ClassificationRejected,
    ClassificationUnavailable,
    GrantDenied,
    PipelineError,
    TimeoutExceeded,
    client_error_code,
    is_transient_code,
)
from .models import LabelScore

logger = logging.getLogger(__name__)

# Rekognition errors caused by the input itself; retrying cannot help
REJECTED_ERROR_CODES = frozenset({
    "InvalidImageFormatException",
    "ImageTooLargeException",
    "InvalidParameterException",
    "InvalidS3ObjectException",
})


class Classifier(ABC):
    """
    Opaque image-classification capability.

    ``deterministic`` declares whether identical bytes always produce
    identical labels. Redelivery handling relies on it when no durable
    result store is configured.
    """

    deterministic: bool = False

    @abstractmethod
    def classify(self, data: bytes) -> List[LabelScore]:
        """
        Classify image bytes.

        Returns:
            Labels ordered by descending confidence, confidence in [0, 1]

        Raises:
            ClassificationUnavailable: On transport or availability errors
            ClassificationRejected: On malformed or unsupported input
        """
        pass


def sort_labels(labels: List[LabelScore]) -> List[LabelScore]:
    """Order labels by descending confidence, then name, for a stable result."""
    return sorted(labels, key=lambda l: (-l.confidence, l.label))


class RekognitionClassifier(Classifier):
    """Classifier backed by Amazon Rekognition DetectLabels."""

    def __init__(
        self,
        client,
        max_labels: int = 10,
        min_confidence: float = 70.0,
        deterministic: bool = False,
    ):
        """
        Args:
            client: boto3 Rekognition client
            max_labels: MaxLabels passed to DetectLabels
            min_confidence: MinConfidence (0-100) passed to DetectLabels
            deterministic: Whether to treat the service as deterministic
        """
        self._client = client
        self.max_labels = max_labels
        self.min_confidence = min_confidence
        self.deterministic = deterministic

    def classify(self, data: bytes) -> List[LabelScore]:
        if not data:
            raise ClassificationRejected("Image is empty")

        try:
            response = self._client.detect_labels(
                Image={"Bytes": data},
                MaxLabels=self.max_labels,
                MinConfidence=self.min_confidence,
            )
        except ClientError as e:
            raise self._map_client_error(e)
        except (ReadTimeoutError, ConnectTimeoutError) as e:
            raise TimeoutExceeded(f"Rekognition call timed out: {e}")
        except (EndpointConnectionError, BotoCoreError) as e:
            raise ClassificationUnavailable(f"Rekognition is unreachable: {e}")

        labels = [
            LabelScore(label=label["Name"], confidence=round(float(label["Confidence"]) / 100.0, 4))
            for label in response.get("Labels", [])
            if label.get("Name")
        ]
        logger.debug(f"Rekognition returned {len(labels)} label(s)")
        return sort_labels(labels)

    @staticmethod
    def _map_client_error(error: ClientError) -> PipelineError:
        code = client_error_code(error)
        message = error.response.get("Error", {}).get("Message", "")
        metadata = {"awsErrorCode": code}

        if code in REJECTED_ERROR_CODES:
            return ClassificationRejected(f"{code}: {message}", metadata)
        if code in ACCESS_DENIED_ERROR_CODES:
            return GrantDenied(f"Rekognition denied DetectLabels ({code})", metadata)
        if is_transient_code(code):
            return ClassificationUnavailable(f"Rekognition is unavailable ({code})", metadata)

        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if status >= 500:
            return ClassificationUnavailable(f"Rekognition is unavailable ({code or status})", metadata)
        return ClassificationRejected(f"{code}: {message}", metadata)
