import pytest

from scopegen.agents import vision
from scopegen.integrations import onebuild, rekognition, s3


def test_parse_s3_url_variants(monkeypatch):
    monkeypatch.delenv("S3_PUBLIC_BASE_URL", raising=False)
    assert s3.parse_s3_url("https://photos.s3.us-west-2.amazonaws.com/mobile/u/1/a.jpg") == (
        "photos",
        "mobile/u/1/a.jpg",
    )
    assert s3.parse_s3_url("https://s3.amazonaws.com/photos/mobile/a.jpg") == ("photos", "mobile/a.jpg")
    assert s3.parse_s3_url("https://cdn.example.com/a.jpg") is None

    monkeypatch.setenv("S3_PUBLIC_BASE_URL", "https://cdn.example.com/")
    monkeypatch.setenv("S3_BUCKET", "photos")
    assert s3.parse_s3_url("https://cdn.example.com/mobile/a.jpg") == ("photos", "mobile/a.jpg")


def test_build_photo_key_prefers_filename_extension():
    key = s3.build_photo_key("user-1", 7, "image/jpeg", "IMG_0001.HEIC")
    assert key.startswith("mobile/user-1/7/")
    assert key.endswith(".heic")
    assert s3.build_photo_key("user-1", 7, "image/png").endswith(".png")


@pytest.mark.parametrize("filename", ["a.png/../../other", "photo.verylongext", "shot.j pg", "x.", "name.../x"])
def test_build_photo_key_ignores_unsafe_extensions(filename):
    key = s3.build_photo_key("user-1", 7, "image/png", filename)
    assert key.endswith(".png")
    assert key.count("/") == 3


def test_presign_requires_bucket(monkeypatch):
    monkeypatch.delenv("S3_BUCKET", raising=False)
    with pytest.raises(RuntimeError):
        s3.presign_photo_upload("user-1", 7, "image/jpeg")


def test_providers_refuse_without_credentials(monkeypatch):
    for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "ONEBUILD_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError):
        rekognition.detect_labels("https://cdn.example.com/a.jpg")
    with pytest.raises(RuntimeError):
        onebuild.get_trade_pricing("roofing", "80202")


def test_vision_extract_json_strips_fences():
    assert vision._extract_json('```json\n{"labels": ["tile"]}\n```') == {"labels": ["tile"]}
    with pytest.raises(ValueError):
        vision._extract_json("[1, 2]")
