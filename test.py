import os
import requests
import hashlib
from datetime import datetime, timedelta, timezone
from jose import jwt

# Configuration
BASE_URL = os.getenv("SHAREVAULT_URL", "http://localhost:8000")
USERNAME = "testuser"
EMAIL = "testuser@example.com"
TEST_FILE = "test_file.bin"     # File to upload
CHUNK_SIZE = 1024 * 1024        # 1MB chunks
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key")  # Must match the server
ALGORITHM = os.getenv("ALGORITHM", "HS256")
PERM_UPLOAD_DIR = os.getenv("PERM_UPLOAD_DIR", "uploads")

# Helper functions
def get_auth_token(username: str = USERNAME, email: str = EMAIL):
    """Mint a JWT signed with the server's SECRET_KEY"""
    payload = {"sub": username, "exp": datetime.now(timezone.utc) + timedelta(minutes=30)}
    if email:
        payload["email"] = email
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}

def init_upload(filename: str, token: str, metadata: dict = None):
    """Open an upload session and return its ID"""
    file_size = os.path.getsize(filename)
    response = requests.post(
        f"{BASE_URL}/upload/chunked/init",
        headers=auth_headers(token),
        json={
            "filename": os.path.basename(filename),
            "total_size": file_size,
            "metadata": metadata or {},
        },
    )
    response.raise_for_status()
    return response.json()["upload_id"]

def upload_file(filename: str, token: str):
    """Upload file in chunks and finalize it, returning the file ID"""
    file_size = os.path.getsize(filename)
    print(f"Starting upload of {filename} ({file_size} bytes)")

    try:
        upload_id = init_upload(filename, token, {"downloads_limit": "5", "filetype": "application/octet-stream"})
        print(f"Upload session: {upload_id}")

        with open(filename, 'rb') as f:
            chunk_num = 0
            while True:
                chunk_data = f.read(CHUNK_SIZE)
                if not chunk_data:
                    break

                response = requests.post(
                    f"{BASE_URL}/upload/chunked/chunk",
                    params={"upload_id": upload_id, "chunk_index": chunk_num},
                    headers={
                        **auth_headers(token),
                        "Content-Type": "application/octet-stream"
                    },
                    data=chunk_data
                )
                response.raise_for_status()
                print(f"Uploaded chunk {chunk_num}: {response.json()}")
                chunk_num += 1

        response = requests.post(
            f"{BASE_URL}/upload/chunked/complete",
            params={"upload_id": upload_id},
            headers=auth_headers(token),
        )
        response.raise_for_status()

    except requests.exceptions.RequestException as e:
        print(f"Upload failed: {str(e)}")
        if hasattr(e, 'response') and e.response is not None:
            print("Server response:", e.response.text)
        return None

    file_id = response.json()["file_id"]
    print(f"Upload completed successfully: file_id={file_id}")
    return file_id

def check_double_complete(file_id: str, token: str):
    """A finished session must not be completed twice"""
    print(f"\nCompleting {file_id} a second time...")
    response = requests.post(
        f"{BASE_URL}/upload/chunked/complete",
        params={"upload_id": file_id},
        headers=auth_headers(token),
    )
    print(f"- Status: {response.status_code} {response.json()}")
    return response.status_code == 404

def check_foreign_chunk(token: str):
    """Chunks from another user must be rejected"""
    print("\nSending a chunk as another user...")
    upload_id = init_upload(TEST_FILE, token)
    response = requests.post(
        f"{BASE_URL}/upload/chunked/chunk",
        params={"upload_id": upload_id, "chunk_index": 0},
        headers=auth_headers(get_auth_token("intruder", None)),
        data=b"x" * 16,
    )
    print(f"- Status: {response.status_code} {response.json()}")
    status = requests.get(
        f"{BASE_URL}/upload/chunked/status",
        params={"upload_id": upload_id},
        headers=auth_headers(token),
    ).json()
    print(f"- Bytes received by session: {status.get('bytes_received')}")
    return response.status_code == 403 and status.get("bytes_received") == 0

def verify_file(original: str, stored: str):
    """Verify file integrity using SHA1 checksum"""
    print("\nVerifying file integrity...")

    def get_sha1(filepath):
        hash_sha1 = hashlib.sha1()
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                hash_sha1.update(chunk)
        return hash_sha1.hexdigest()

    if not os.path.exists(stored):
        print(f"Stored file {stored} not found")
        return False

    orig_hash = get_sha1(original)
    stored_hash = get_sha1(stored)

    print(f"Original file SHA1: {orig_hash}")
    print(f"Stored file SHA1: {stored_hash}")

    if orig_hash == stored_hash:
        print("Files match perfectly!")
        return True
    else:
        print("Files differ!")
        return False

def main():
    # Create a test file if it doesn't exist
    if not os.path.exists(TEST_FILE):
        print(f"Creating test file {TEST_FILE}...")
        with open(TEST_FILE, 'wb') as f:
            f.write(os.urandom(5 * 1024 * 1024))  # 5MB random file
        print(f"Created {TEST_FILE} ({os.path.getsize(TEST_FILE)} bytes)")

    token = get_auth_token()

    print("\n=== Testing upload ===")
    file_id = upload_file(TEST_FILE, token)
    if not file_id:
        print("Upload test failed")
        return

    print("\n=== Verifying integrity ===")
    if not verify_file(TEST_FILE, os.path.join(PERM_UPLOAD_DIR, file_id)):
        print("Integrity verification failed")
        return

    print("\n=== Testing double completion ===")
    if not check_double_complete(file_id, token):
        print("Double completion test failed")
        return

    print("\n=== Testing ownership ===")
    if not check_foreign_chunk(token):
        print("Ownership test failed")
        return

    print("\nAll tests completed successfully!")

if __name__ == "__main__":
    main()
