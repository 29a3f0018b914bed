"""Tests for auth module (tokens, passwords, face matching, auth endpoints)."""
import base64
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from conftest import auth_headers, face_image

from facechat.auth.dependencies import extract_credential
from facechat.auth.faces import DisabledFaceMatcher, RekognitionFaceMatcher, decode_image, strip_data_url
from facechat.auth.schemas import Identity
from facechat.auth.service import PasswordHasher, TokenService
from facechat.errors import AuthError, AuthFailure, ValidationError


def signup(client, username, face=None, email=None, password="s3cret"):
    return client.post(
        "/auth/signup",
        json={
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
            "faceImage": face or face_image(username),
        },
    )


def login(client, username, face=None, password="s3cret"):
    body = {"username": username, "password": password}
    if face is not False:
        body["faceImage"] = face or face_image(username)
    return client.post("/auth/login", json=body)


class TestTokenService:
    def test_issue_and_verify(self, tokens):
        identity = Identity(userId="u1", username="alice")
        assert tokens.verify(tokens.issue(identity)) == identity

    def test_expired_token(self):
        tokens = TokenService("k", access_ttl=timedelta(seconds=-5))
        with pytest.raises(AuthError) as exc:
            tokens.verify(tokens.issue(Identity(userId="u1", username="alice")))
        assert exc.value.failure == AuthFailure.EXPIRED_CREDENTIAL
        assert exc.value.status_code == 401

    def test_wrong_key(self, tokens):
        other = TokenService("other-key")
        with pytest.raises(AuthError) as exc:
            tokens.verify(other.issue(Identity(userId="u1", username="alice")))
        assert exc.value.failure == AuthFailure.INVALID_CREDENTIAL

    def test_refresh_token_is_not_an_access_token(self):
        tokens = TokenService("shared-key")
        refresh = tokens.issue_refresh(Identity(userId="u1", username="alice"))
        assert tokens.verify_refresh(refresh).userId == "u1"
        with pytest.raises(AuthError):
            tokens.verify(refresh)

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            TokenService("")


class TestPasswordHasher:
    def test_hash_and_verify(self):
        hasher = PasswordHasher()
        hashed = hasher.hash("correct horse")
        assert hashed != "correct horse"
        assert hasher.verify("correct horse", hashed) is True
        assert hasher.verify("wrong", hashed) is False

    def test_unrecognized_hash(self):
        assert PasswordHasher().verify("pw", "not-a-hash") is False


class TestExtractCredential:
    def test_bearer_header_wins(self):
        assert extract_credential({"authorization": "Bearer abc"}, {"token": "cookie"}) == "abc"

    def test_cookie_fallback(self):
        assert extract_credential({}, {"token": "cookie"}) == "cookie"
        assert extract_credential({"authorization": "Basic xyz"}, {}) is None


class TestFaceImages:
    def test_strip_data_url(self):
        assert strip_data_url("data:image/jpeg;base64,QUJD") == "QUJD"
        assert strip_data_url("QUJD") == "QUJD"

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValidationError):
            decode_image("")
        with pytest.raises(ValidationError):
            decode_image("data:image/png;base64,%%%")

    def test_disabled_matcher_accepts_any_face(self):
        matcher = DisabledFaceMatcher()
        template = matcher.enroll(face_image("alice"))
        assert template == base64.b64encode(b"alice").decode()
        assert matcher.matches(template, face_image("someone-else")) is True


class TestRekognitionFaceMatcher:
    @patch("facechat.auth.faces.boto3")
    def test_detect_and_compare(self, mock_boto3):
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client
        mock_client.detect_faces.return_value = {"FaceDetails": [{"Confidence": 99.9}]}
        mock_client.compare_faces.return_value = {"FaceMatches": [{"Similarity": 97.2}]}

        matcher = RekognitionFaceMatcher(region_name="eu-west-1", similarity_threshold=85.0)
        template = matcher.enroll(face_image("alice"))
        assert matcher.matches(template, face_image("alice")) is True

        mock_boto3.client.assert_called_once_with("rekognition", region_name="eu-west-1")
        mock_client.compare_faces.assert_called_once_with(
            SourceImage={"Bytes": b"alice"},
            TargetImage={"Bytes": b"alice"},
            SimilarityThreshold=85.0,
        )

    @patch("facechat.auth.faces.boto3")
    def test_no_face_detected(self, mock_boto3):
        mock_boto3.client.return_value.detect_faces.return_value = {"FaceDetails": []}
        with pytest.raises(ValidationError):
            RekognitionFaceMatcher().enroll(face_image("wall"))

    @patch("facechat.auth.faces.boto3")
    def test_client_error_is_a_mismatch(self, mock_boto3):
        mock_boto3.client.return_value.compare_faces.side_effect = ClientError(
            {"Error": {"Code": "InvalidParameterException", "Message": "no face"}},
            "CompareFaces",
        )
        assert RekognitionFaceMatcher().matches("YQ==", "Yg==") is False


class TestAuthEndpoints:
    def test_signup_login_me(self, api_client):
        created = signup(api_client, "dora")
        assert created.status_code == 201
        assert created.json()["user"]["username"] == "dora"
        assert "passwordHash" not in created.json()["user"]

        response = login(api_client, "dora")
        assert response.status_code == 200
        body = response.json()
        assert body["token"] and body["refreshToken"]
        assert body["user"]["email"] == "dora@example.com"
        assert response.cookies.get("token") == body["token"]

        me = api_client.get("/auth/me", headers=auth_headers(body["token"]))
        assert me.status_code == 200
        assert me.json()["username"] == "dora"

    def test_signup_without_face(self, api_client):
        response = signup(api_client, "dora", face=face_image("noface"))
        assert response.status_code == 400
        assert login(api_client, "dora").status_code == 401

    def test_duplicate_signup(self, api_client):
        assert signup(api_client, "dora").status_code == 201
        again = signup(api_client, "dora", email="other@example.com")
        assert again.status_code == 409

    def test_signup_bad_email(self, api_client):
        assert signup(api_client, "dora", email="dora").status_code == 400

    def test_face_mismatch(self, api_client):
        signup(api_client, "dora")
        response = login(api_client, "dora", face=face_image("eve"))
        assert response.status_code == 401
        assert response.json()["error"] == "Face verification failed"

    def test_wrong_password(self, api_client):
        signup(api_client, "dora")
        response = login(api_client, "dora", password="guess")
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid credentials"

    def test_face_is_required(self, api_client):
        signup(api_client, "dora")
        assert login(api_client, "dora", face=False).status_code == 400

    def test_refresh(self, api_client):
        signup(api_client, "dora")
        tokens = login(api_client, "dora").json()

        refreshed = api_client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 200
        me = api_client.get("/auth/me", headers=auth_headers(refreshed.json()["token"]))
        assert me.json()["username"] == "dora"

        # Access tokens are not accepted as refresh tokens
        rejected = api_client.post("/auth/refresh", json={"refreshToken": tokens["token"]})
        assert rejected.status_code == 401

    def test_me_requires_credential(self, api_client):
        response = api_client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["reason"] == "no-credential"
