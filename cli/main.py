#!/usr/bin/env python3
"""
vidqueue CLI - upload videos and inspect the transcoding pipeline.
"""

import argparse
import asyncio
import mimetypes
import os
import sys
from datetime import timedelta
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import truncate_error
from config import (
    DEFAULT_UPLOAD_CONTENT_TYPE,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    PUBLIC_PORT,
    STUCK_QUEUED_THRESHOLD,
    UPLOAD_CHUNK_SIZE,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VIDQUEUE_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 2 hours)
UPLOAD_TIMEOUT = int(os.getenv("VIDQUEUE_UPLOAD_TIMEOUT", "7200"))

_default_api_url = f"http://localhost:{PUBLIC_PORT}"
API_BASE = os.getenv("VIDQUEUE_API_URL", _default_api_url).rstrip("/") + "/api"

# Bearer token for upload intents when the server enforces identity
API_TOKEN = os.getenv("VIDQUEUE_API_TOKEN", "")

STATUS_CHOICES = ["uploading", "queued", "processing", "ready", "failed"]


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def iter_file_with_progress(f, progress, task_id, chunk_size: int = UPLOAD_CHUNK_SIZE):
    """Yield a file in chunks, advancing the progress bar by the bytes read."""
    while True:
        data = f.read(chunk_size)
        if not data:
            break
        progress.update(task_id, advance=len(data))
        yield data


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path):
    """
    Validate file exists, is readable, non-empty and within the upload limit.

    Returns:
        int: File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > MAX_UPLOAD_SIZE:
        max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
        file_size_gb = file_size / (1024 * 1024 * 1024)
        raise CLIError(f"File too large ({file_size_gb:.2f} GB). Maximum upload size is {max_size_gb:.0f} GB")

    return file_size


def get_auth_headers(token: str = "") -> dict:
    """Bearer header for the public API, if a token is available."""
    token = token or API_TOKEN
    return {"Authorization": f"Bearer {token}"} if token else {}


def _fail(message: str):
    print(f"Error: {message}")
    sys.exit(1)


def cmd_upload(args):
    """Create an upload intent and send the file to the signed URL."""
    try:
        file_path = Path(args.file)
        file_size = validate_file(file_path)

        title = args.title or file_path.stem.replace("-", " ").replace("_", " ").title()
        content_type = args.content_type or mimetypes.guess_type(file_path.name)[0] or DEFAULT_UPLOAD_CONTENT_TYPE

        print(f"Uploading: {file_path.name}")
        print(f"Title: {title}")

        response = httpx.post(
            f"{API_BASE}/videos",
            json={
                "title": title,
                "description": args.description or "",
                "filename": file_path.name,
                "contentType": content_type,
            },
            headers=get_auth_headers(args.token),
            timeout=DEFAULT_API_TIMEOUT,
        )
        intent = safe_json_response(response)

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task_id = progress.add_task("Uploading...", total=file_size)
            with open(file_path, "rb") as f:
                with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                    upload = client.put(
                        intent["uploadUrl"],
                        content=iter_file_with_progress(f, progress, task_id),
                        headers={"Content-Type": content_type, "Content-Length": str(file_size)},
                    )
        if not upload.is_success:
            raise CLIError(f"Upload failed ({upload.status_code}): {truncate_error(upload.text, ERROR_SUMMARY_MAX_LENGTH)}")

        print("Success! Upload complete, processing starts automatically.")
        print(f"  ID: {intent['videoId']}")
        print(f"  Object: {intent['bucket']}/{intent['objectPath']}")

    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
    except CLIError as e:
        _fail(str(e))


def cmd_list(args):
    """List videos."""
    try:
        params = {"limit": args.limit}
        if args.status:
            params["status"] = args.status
        response = httpx.get(f"{API_BASE}/videos", params=params, timeout=DEFAULT_API_TIMEOUT)
        videos_list = safe_json_response(response).get("videos", [])

        if not videos_list:
            print("No videos found.")
            return

        print(f"{'ID':<34} {'Status':<12} {'Title':<40}")
        print("-" * 88)
        for v in videos_list:
            title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
            print(f"{v['id']:<34} {v['status']:<12} {title:<40}")

    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def cmd_show(args):
    """Show one video record."""
    try:
        response = httpx.get(f"{API_BASE}/videos/{args.video_id}", timeout=DEFAULT_API_TIMEOUT)
        video = safe_json_response(response)

        print(f"ID:          {video['id']}")
        print(f"Title:       {video['title']}")
        print(f"Status:      {video['status']}")
        print(f"Raw path:    {video.get('rawPath', '-')}")
        if video.get("playbackUrl"):
            print(f"Playback:    {video['playbackUrl']}")
        for label, rendition in sorted(video.get("renditions", {}).items(), key=lambda item: item[1]["height"]):
            print(f"  {label:<8} {rendition['path']}")
        if video.get("error"):
            print(f"Error:       {video['error']}")
        print(f"Updated:     {video['updatedAt']}")

    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


def cmd_process(args):
    """Request (re-)processing of a video."""
    try:
        response = httpx.post(f"{API_BASE}/videos/{args.video_id}/process", timeout=DEFAULT_API_TIMEOUT)
        result = safe_json_response(response)
        print(f"Video {result['videoId']} queued for processing.")

    except httpx.ConnectError:
        _fail(f"Could not connect to API at {API_BASE}")
    except httpx.TimeoutException:
        _fail(f"Request timed out while connecting to {API_BASE}")
    except CLIError as e:
        _fail(str(e))


async def _reconcile(older_than: int, dry_run: bool) -> int:
    # Imported here so the HTTP-only commands do not need database drivers
    from api.blob_store import LocalBlobStore
    from api.database import configure_database, create_database, create_tables
    from api.dispatcher import JobDispatcher
    from api.job_queue import RedisJobQueue, create_redis
    from api.status_store import DatabaseStatusStore
    from config import PUBLIC_BASE_URL, REDIS_URL, SIGNING_SECRET, STORAGE_PATH

    if not REDIS_URL and not dry_run:
        raise CLIError("VIDQUEUE_REDIS_URL is required to re-publish jobs")

    await asyncio.to_thread(create_tables)
    database = create_database()
    await database.connect()
    redis = create_redis(REDIS_URL) if REDIS_URL else None
    try:
        await configure_database(database)
        store = DatabaseStatusStore(database)
        dispatcher = JobDispatcher(
            store,
            LocalBlobStore(STORAGE_PATH, PUBLIC_BASE_URL, SIGNING_SECRET),
            RedisJobQueue(redis) if redis is not None else None,
        )
        threshold = timedelta(seconds=older_than)
        stuck = await dispatcher.find_stuck(threshold)
        if not stuck:
            print("No stuck videos.")
            return 0

        print(f"{len(stuck)} video(s) queued for more than {older_than}s:")
        for video in stuck:
            print(f"  {video.id}  {video.title}  (updated {video.updated_at.isoformat()})")
        if dry_run:
            return 0

        requeued = await dispatcher.reconcile_stuck(threshold)
        print(f"Re-published {len(requeued)} of {len(stuck)} job(s).")
        return 0 if len(requeued) == len(stuck) else 1
    finally:
        if redis is not None:
            await redis.aclose()
        await database.disconnect()


def cmd_reconcile(args):
    """Re-publish jobs for videos stuck in "queued"."""
    try:
        exit_code = asyncio.run(_reconcile(args.older_than, args.dry_run))
    except CLIError as e:
        _fail(str(e))
    if exit_code:
        sys.exit(exit_code)


def main():
    parser = argparse.ArgumentParser(prog="vidqueue", description="vidqueue CLI - upload and track video transcoding")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Upload command
    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.add_argument("--content-type", help="Content type (default: guessed from the filename)")
    upload_parser.add_argument("--token", default="", help="Bearer token (default: VIDQUEUE_API_TOKEN)")
    upload_parser.set_defaults(func=cmd_upload)

    # List command
    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("-s", "--status", choices=STATUS_CHOICES, help="Filter by status")
    list_parser.add_argument("-n", "--limit", type=positive_int, default=100, help="Maximum number of videos")
    list_parser.set_defaults(func=cmd_list)

    # Show command
    show_parser = subparsers.add_parser("show", help="Show a video's status record")
    show_parser.add_argument("video_id", help="Video ID")
    show_parser.set_defaults(func=cmd_show)

    # Process command
    process_parser = subparsers.add_parser("process", help="Request processing for an uploaded video")
    process_parser.add_argument("video_id", help="Video ID")
    process_parser.set_defaults(func=cmd_process)

    # Reconcile command (direct database access)
    reconcile_parser = subparsers.add_parser("reconcile", help="Re-publish jobs stuck in queued")
    reconcile_parser.add_argument(
        "--older-than",
        type=positive_int,
        default=STUCK_QUEUED_THRESHOLD,
        metavar="SECONDS",
        help=f"Only videos queued longer than this (default: {STUCK_QUEUED_THRESHOLD})",
    )
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Only list stuck videos")
    reconcile_parser.set_defaults(func=cmd_reconcile)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
