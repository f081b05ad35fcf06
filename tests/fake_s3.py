"""In-memory stand-ins for a boto3 S3 client and the OS keychain."""
from datetime import datetime, timezone
import threading

from botocore.exceptions import ClientError, ConnectionClosedError, EndpointConnectionError

from s3nav.profiles import RemoteProfile

MODIFIED = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def make_profile(name="r1", **overrides):
    values = {
        "name": name,
        "access_key_id": "AKIDEXAMPLE",
        "secret_access_key": "secret-key",
        "bucket_name": f"{name}-bucket",
        "endpoint": "https://s3.example.com",
    }
    values.update(overrides)
    return RemoteProfile(**values)


def client_error(code, status, operation="Operation", message=None):
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def transient_error():
    return EndpointConnectionError(endpoint_url="https://s3.example.com")


class FakeBody:
    def __init__(self, data, fail_after=None):
        self._data = data
        self._pos = 0
        self._fail_after = fail_after
        self.closed = False

    def read(self, amt=None):
        if self._fail_after is not None and self._pos >= self._fail_after:
            raise ConnectionClosedError(endpoint_url="https://s3.example.com")
        end = len(self._data) if amt is None else self._pos + amt
        if self._fail_after is not None:
            end = min(end, self._fail_after)
        chunk = self._data[self._pos:end]
        self._pos += len(chunk)
        return chunk

    def close(self):
        self.closed = True


class FakeS3Client:
    """Serves list/get/put/delete from a dict of key -> bytes.

    ``failures`` maps an operation name to exceptions raised on successive
    calls; ``read_failures`` holds byte offsets at which successive
    ``get_object`` bodies break; ``hooks`` maps an operation to a callable run
    with the call's kwargs before it is served.
    """

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.calls = []
        self.failures = {}
        self.read_failures = []
        self.hooks = {}
        self.uploads = {}
        self.aborted = []
        self._lock = threading.Lock()
        self._upload_counter = 0

    def calls_for(self, operation):
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _enter(self, operation, kwargs):
        with self._lock:
            self.calls.append((operation, kwargs))
            pending = self.failures.get(operation)
            error = pending.pop(0) if pending else None
        hook = self.hooks.get(operation)
        if hook:
            hook(kwargs)
        if error is not None:
            raise error

    def list_objects_v2(self, **kwargs):
        self._enter("list_objects_v2", kwargs)
        prefix = kwargs.get("Prefix", "")
        delimiter = kwargs.get("Delimiter")
        max_keys = kwargs.get("MaxKeys", 1000)
        token = kwargs.get("ContinuationToken")

        items = []
        seen_prefixes = set()
        for key in sorted(self.objects):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            index = rest.find(delimiter) if delimiter else -1
            if index >= 0:
                common = prefix + rest[: index + 1]
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    items.append(("prefix", common))
            else:
                items.append(("key", key))
        items.sort(key=lambda item: item[1])

        start = int(token.split("-", 1)[1]) if token else 0
        page = items[start:start + max_keys]
        truncated = start + max_keys < len(items)
        response = {
            "Contents": [
                {
                    "Key": name,
                    "Size": len(self.objects[name]),
                    "LastModified": MODIFIED,
                    "ETag": f'"etag-{name}"',
                }
                for kind, name in page
                if kind == "key"
            ],
            "CommonPrefixes": [{"Prefix": name} for kind, name in page if kind == "prefix"],
            "IsTruncated": truncated,
            "KeyCount": len(page),
        }
        if truncated:
            response["NextContinuationToken"] = f"tok-{start + max_keys}"
        return response

    def get_object(self, **kwargs):
        self._enter("get_object", kwargs)
        key = kwargs["Key"]
        if key not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        data = self.objects[key]
        start = 0
        range_header = kwargs.get("Range")
        if range_header:
            start = int(range_header.split("=", 1)[1].rstrip("-"))
        fail_after = self.read_failures.pop(0) if self.read_failures else None
        response = {
            "Body": FakeBody(data[start:], fail_after),
            "ContentLength": len(data) - start,
            "ETag": f'"etag-{key}"',
        }
        if range_header:
            response["ContentRange"] = f"bytes {start}-{len(data) - 1}/{len(data)}"
        return response

    def put_object(self, **kwargs):
        self._enter("put_object", kwargs)
        self.objects[kwargs["Key"]] = bytes(kwargs["Body"])
        return {"ETag": f'"etag-{kwargs["Key"]}"'}

    def create_multipart_upload(self, **kwargs):
        self._enter("create_multipart_upload", kwargs)
        with self._lock:
            self._upload_counter += 1
            upload_id = f"upload-{self._upload_counter}"
        self.uploads[upload_id] = {"key": kwargs["Key"], "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(self, **kwargs):
        self._enter("upload_part", kwargs)
        upload = self.uploads.get(kwargs["UploadId"])
        if upload is None:
            raise client_error("NoSuchUpload", 404, "UploadPart")
        number = kwargs["PartNumber"]
        upload["parts"][number] = bytes(kwargs["Body"])
        return {"ETag": f'"part-{number}"'}

    def complete_multipart_upload(self, **kwargs):
        self._enter("complete_multipart_upload", kwargs)
        upload = self.uploads.pop(kwargs["UploadId"])
        numbers = [part["PartNumber"] for part in kwargs["MultipartUpload"]["Parts"]]
        self.objects[upload["key"]] = b"".join(upload["parts"][number] for number in numbers)
        return {}

    def abort_multipart_upload(self, **kwargs):
        self._enter("abort_multipart_upload", kwargs)
        self.uploads.pop(kwargs["UploadId"], None)
        self.aborted.append(kwargs["UploadId"])
        return {}

    def delete_object(self, **kwargs):
        self._enter("delete_object", kwargs)
        self.objects.pop(kwargs["Key"], None)
        return {}

    def delete_objects(self, **kwargs):
        self._enter("delete_objects", kwargs)
        deleted = []
        for item in kwargs["Delete"]["Objects"]:
            self.objects.pop(item["Key"], None)
            deleted.append({"Key": item["Key"]})
        return {"Deleted": deleted}

    def head_bucket(self, **kwargs):
        self._enter("head_bucket", kwargs)
        return {}


class FakeKeychain:
    def __init__(self):
        self.secrets = {}
        self.set_calls = []
        self.delete_calls = []

    def get_secret(self, profile_name: str) -> str:
        return self.secrets.get(profile_name, "")

    def set_secret(self, profile_name: str, secret_key: str) -> None:
        self.set_calls.append((profile_name, secret_key))
        self.secrets[profile_name] = secret_key

    def delete_secret(self, profile_name: str) -> None:
        self.delete_calls.append(profile_name)
        self.secrets.pop(profile_name, None)
