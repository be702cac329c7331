from locust import HttpUser, between, task
import os
import uuid

APP_PASSWORD = os.environ.get("APP_PASSWORD")
CHUNK_SIZE = int(os.environ.get("LOCUST_CHUNK_SIZE", str(256 * 1024)))
TOTAL_CHUNKS = int(os.environ.get("LOCUST_TOTAL_CHUNKS", "4"))


class ResiliencyUser(HttpUser):
    wait_time = between(0.5, 2.0)

    def on_start(self):
        self.client.post("/login", json={"password": APP_PASSWORD})
        self.uploaded = []

    @task(3)
    def list_files(self):
        self.client.get("/api/files")

    @task(2)
    def ranged_read(self):
        if not self.uploaded:
            return
        name = self.uploaded[-1]
        self.client.get(f"/file/{name}", headers={"Range": "bytes=0-1023"}, name="/file/[name]")

    @task(1)
    def chunked_upload(self):
        payload = {
            "filename": f"locust-{uuid.uuid4().hex[:8]}.bin",
            "size": CHUNK_SIZE * TOTAL_CHUNKS,
            "chunkSize": CHUNK_SIZE,
            "totalChunks": TOTAL_CHUNKS,
        }
        resp = self.client.post("/api/upload/init", json=payload)
        if resp.status_code >= 400:
            return
        upload_id = resp.json()["uploadId"]
        # Reverse order exercises out-of-order arrival.
        for index in reversed(range(TOTAL_CHUNKS)):
            self.client.put(
                "/api/upload/chunk",
                params={"uploadId": upload_id, "index": index},
                data=os.urandom(CHUNK_SIZE),
                headers={"Content-Type": "application/octet-stream"},
                name="/api/upload/chunk",
            )
        done = self.client.post("/api/upload/complete", json={"uploadId": upload_id})
        if done.status_code == 200:
            self.uploaded.append(done.json()["file"]["name"])
