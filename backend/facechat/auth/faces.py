"""Face matching for signup and login.

At signup the captured image must contain a face; it is stored as the
account's face template. At login a fresh capture is compared against that
template. The matcher is an injected dependency: ``RekognitionFaceMatcher``
calls AWS Rekognition, ``DisabledFaceMatcher`` accepts any decodable image
(local development), and tests use an in-memory fake.

Images arrive as base64, optionally with a ``data:image/...;base64,`` prefix.
"""
import base64
import binascii
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AwsSecrets, FaceSettings
from ..errors import ValidationError

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


def strip_data_url(image: str) -> str:
    return _DATA_URL_PREFIX.sub("", (image or "").strip())


def decode_image(image: str) -> bytes:
    """Decode a base64 image, with or without a data URL prefix.

    Raises:
        ValidationError: If the payload is empty or not valid base64.
    """
    payload = strip_data_url(image)
    if not payload:
        raise ValidationError("Face image is required")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Face image is not valid base64")


class FaceMatcher(ABC):
    """Detects and compares faces in base64 images.

    Implementations are blocking; callers on the event loop run them in an
    executor.
    """

    def enroll(self, image: str) -> str:
        """Validate a signup capture and return the template to store.

        Raises:
            ValidationError: If the image is malformed or contains no face.
        """
        if not self.detect_face(decode_image(image)):
            raise ValidationError("No face detected in the provided image")
        return strip_data_url(image)

    def matches(self, template: str, probe: str) -> bool:
        """True if ``probe`` shows the same person as the stored ``template``."""
        return self.compare_faces(decode_image(template), decode_image(probe))

    @abstractmethod
    def detect_face(self, image: bytes) -> bool:
        """True if at least one face is visible in ``image``."""

    @abstractmethod
    def compare_faces(self, source: bytes, target: bytes) -> bool:
        """True if ``target`` contains the face in ``source``."""


class RekognitionFaceMatcher(FaceMatcher):
    """FaceMatcher backed by AWS Rekognition DetectFaces/CompareFaces.

    Args:
        region_name: AWS region.
        similarity_threshold: Minimum CompareFaces similarity (0-100).
        aws_access_key_id: AWS access key. ``None`` → default credential chain.
        aws_secret_access_key: AWS secret access key.
        aws_session_token: Optional temporary-credential session token.
    """

    def __init__(
        self,
        region_name: str = "us-east-1",
        similarity_threshold: float = 90.0,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
    ) -> None:
        self._region = region_name
        self._threshold = similarity_threshold
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._session_token = aws_session_token
        self._client: Optional[object] = None

    def _get_client(self):
        """Return a cached boto3 rekognition client."""
        if self._client is None:
            kwargs: dict = {"region_name": self._region}
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"] = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            if self._session_token:
                kwargs["aws_session_token"] = self._session_token
            self._client = boto3.client("rekognition", **kwargs)
        return self._client

    def detect_face(self, image: bytes) -> bool:
        try:
            response = self._get_client().detect_faces(
                Image={"Bytes": image},
                Attributes=["DEFAULT"],
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("[Faces] DetectFaces failed: %s", e)
            return False
        return bool(response.get("FaceDetails"))

    def compare_faces(self, source: bytes, target: bytes) -> bool:
        try:
            response = self._get_client().compare_faces(
                SourceImage={"Bytes": source},
                TargetImage={"Bytes": target},
                SimilarityThreshold=self._threshold,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("[Faces] CompareFaces failed: %s", e)
            return False
        matches = response.get("FaceMatches") or []
        if matches:
            logger.debug("[Faces] Best similarity %.1f", max(m.get("Similarity", 0.0) for m in matches))
        return bool(matches)


class DisabledFaceMatcher(FaceMatcher):
    """Accepts every decodable image. Never use in production."""

    def detect_face(self, image: bytes) -> bool:
        return bool(image)

    def compare_faces(self, source: bytes, target: bytes) -> bool:
        return True


def build_face_matcher(settings: FaceSettings, aws: AwsSecrets) -> FaceMatcher:
    if settings.provider == "disabled":
        logger.warning("[Faces] Face verification is DISABLED; any image is accepted")
        return DisabledFaceMatcher()
    return RekognitionFaceMatcher(
        region_name=settings.region,
        similarity_threshold=settings.similarity_threshold,
        aws_access_key_id=aws.access_key_id or None,
        aws_secret_access_key=aws.secret_access_key or None,
        aws_session_token=aws.session_token or None,
    )
