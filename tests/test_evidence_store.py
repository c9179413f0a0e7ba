import io

import pytest

from givingcore.storage.evidence_store import EvidenceFileMissing, EvidenceStore


class FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)][0])}


def test_filesystem_round_trip(tmp_path):
    store = EvidenceStore(bucket="evidence", filesystem_root=tmp_path)

    location = store.put(b"receipt-bytes", "disputes/1/receipt.pdf", "application/pdf")

    assert location.startswith("file://")
    assert (tmp_path / "disputes/1/receipt.pdf").read_bytes() == b"receipt-bytes"
    assert store.read(location) == b"receipt-bytes"


def test_s3_client_is_used_when_configured(tmp_path):
    s3 = FakeS3()
    store = EvidenceStore(bucket="evidence", filesystem_root=tmp_path, client=s3)

    location = store.put(b"pdf", "disputes/2/a.pdf", "application/pdf")

    assert store.uses_s3
    assert location == "s3://evidence/disputes/2/a.pdf"
    assert s3.objects[("evidence", "disputes/2/a.pdf")] == (b"pdf", "application/pdf")
    assert store.read(location) == b"pdf"


def test_missing_file_raises(tmp_path):
    store = EvidenceStore(bucket="evidence", filesystem_root=tmp_path)
    with pytest.raises(EvidenceFileMissing):
        store.read((tmp_path / "nope.pdf").as_uri())


def test_s3_location_without_client_raises(tmp_path):
    store = EvidenceStore(bucket="evidence", filesystem_root=tmp_path)
    with pytest.raises(EvidenceFileMissing):
        store.read("s3://evidence/disputes/3/a.pdf")
