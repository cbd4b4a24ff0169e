import argparse
import logging
import sys

from tqdm import tqdm

from . import config as config_lib
from . import ffmpeg_runner, scanner
from .errors import PipelineError
from .models import JobMessage, JobStatus, VideoStatus
from .runtime import build_services
from .worker import WorkerPool, build_worker_loop, default_worker_id

logger = logging.getLogger(__name__)


def _print_rule(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def cmd_worker(config, args) -> None:
    if config.worker.processes > 1:
        WorkerPool(config).run()
        return

    services = build_services(config)
    try:
        loop = build_worker_loop(services, default_worker_id(config.worker.worker_id))
        loop.install_signal_handlers()
        loop.run()
    finally:
        services.close()


def cmd_upload(config, args) -> int:
    exts = args.ext.split(",") if args.ext else None
    files = scanner.scan_input(args.input, recursive=args.recursive, limit=args.limit, extensions=exts)
    if not files:
        print(f"No video files found in {args.input}")
        return 1

    services = build_services(config)
    failed = 0
    try:
        for path in tqdm(files, desc="Uploading videos", unit="video", disable=len(files) < 2):
            title = args.title if args.title and len(files) == 1 else None
            try:
                video = services.uploads.upload_file(
                    path,
                    title=title,
                    description=args.description or "",
                    uploaded_by=args.uploaded_by or "",
                )
            except PipelineError as e:
                failed += 1
                tqdm.write(f"Failed: {path}: {e}")
                continue
            tqdm.write(f"{video.id}  {video.status.value:<10}  {path}")
    finally:
        services.close()

    _print_rule("UPLOAD SUMMARY")
    print(f"Scheduled:            {len(files) - failed}")
    print(f"Failed:               {failed}")
    print("=" * 60)
    return 1 if failed else 0


def cmd_status(config, args) -> int:
    services = build_services(config)
    try:
        video = services.video_store.get_by_id(args.video_id)
        jobs = services.job_store.get_by_video_id(video.id)
        derived = services.aggregator.evaluate(video.id)
    finally:
        services.close()

    _print_rule(f"VIDEO {video.id}")
    print(f"Title:                {video.title}")
    print(f"File:                 {video.original_filename} ({video.size} bytes)")
    print(f"Status:               {video.status.value}")
    print(f"Derived status:       {derived.value if derived else 'no jobs'}")
    if video.error_message:
        print(f"Error:                {video.error_message}")
    for fmt in video.formats:
        print(f"Format:               {fmt.quality:<6} {fmt.filename} ({fmt.size} bytes)")
    for thumb in video.thumbnails:
        print(f"Thumbnail:            {thumb}")

    print("\nJOBS")
    for job in sorted(jobs, key=lambda j: j.created_at):
        _print_job(job)
    print("=" * 60)
    return 0


def _print_job(job) -> None:
    detail = job.payload.get("quality", "")
    line = f"{job.id}  {job.type.value:<10} {detail:<6} {job.status.value:<10} {job.progress:>3}%"
    if job.worker_id:
        line += f"  {job.worker_id}"
    if job.error_message:
        line += f"  {job.error_message}"
    print(line)


def cmd_jobs(config, args) -> int:
    services = build_services(config)
    try:
        if args.video:
            jobs = services.job_store.get_by_video_id(args.video)
            if args.status:
                jobs = [j for j in jobs if j.status.value == args.status]
            jobs.sort(key=lambda j: j.created_at)
        elif args.status:
            jobs = services.job_store.get_by_status(JobStatus(args.status))
        else:
            jobs = services.job_store.get_pending_jobs(args.limit) + services.job_store.get_active_jobs()
    finally:
        services.close()

    for job in jobs[:args.limit]:
        _print_job(job)
    print(f"{min(len(jobs), args.limit)} job(s)")
    return 0


def cmd_videos(config, args) -> int:
    services = build_services(config)
    try:
        if args.status:
            videos = services.video_store.get_by_status(VideoStatus(args.status))
            videos = videos[args.offset:args.offset + args.limit]
        else:
            videos = services.video_store.list_videos(limit=args.limit, offset=args.offset)
    finally:
        services.close()

    for video in videos:
        print(f"{video.id}  {video.status.value:<10}  {len(video.formats)} format(s)  {video.title}")
    print(f"{len(videos)} video(s)")
    return 0


def cmd_republish(config, args) -> int:
    services = build_services(config)
    try:
        job = services.job_store.get_by_id(args.job_id)
        if job.status != JobStatus.PENDING:
            print(f"Job {job.id} is {job.status.value}; only pending jobs can be republished")
            return 1
        services.queue.enqueue(config.queue.name, JobMessage.from_job(job).to_wire())
    finally:
        services.close()

    print(f"Republished job {job.id} to {config.queue.name}")
    return 0


def cmd_queue_size(config, args) -> int:
    services = build_services(config)
    try:
        size = services.queue.size(config.queue.name)
    finally:
        services.close()
    print(f"{config.queue.name}: {size}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="video-pipeline", description="Video upload fan-out and transcoding workers"
    )
    parser.add_argument("--config", "-c", type=str, help="Config YAML (default: config/default.yaml)")
    parser.add_argument("--db", dest="db_path", type=str, help="Database path override")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ERROR")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run worker loop(s)")
    worker_parser.add_argument("--processes", "-p", type=int, help="Number of worker processes")
    worker_parser.add_argument("--worker-id", type=str, help="Worker identity")
    worker_parser.add_argument(
        "--queue-backend", choices=["sqlite", "redis"], help="Override queue backend"
    )

    # UPLOAD
    upload_parser = subparsers.add_parser("upload", help="Upload local videos and fan out jobs")
    upload_parser.add_argument("--input", "-i", type=str, required=True, help="Input file or folder")
    upload_parser.add_argument("--recursive", "-r", action="store_true", help="Recursive scan")
    upload_parser.add_argument("--ext", type=str, help="Comma-separated extensions (mp4,mov)")
    upload_parser.add_argument("--limit", type=int, help="Max files to upload")
    upload_parser.add_argument("--title", type=str, help="Title (single file; default: file name)")
    upload_parser.add_argument("--description", type=str, help="Description")
    upload_parser.add_argument("--uploaded-by", type=str, help="Uploader name")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a video and its jobs")
    status_parser.add_argument("video_id", type=str, help="Video identifier")

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="List jobs")
    jobs_parser.add_argument("--status", choices=[s.value for s in JobStatus], help="Filter by status")
    jobs_parser.add_argument("--video", type=str, help="Filter by video id")
    jobs_parser.add_argument("--limit", type=int, default=50, help="Max jobs to list")

    # VIDEOS
    videos_parser = subparsers.add_parser("videos", help="List videos, newest first")
    videos_parser.add_argument("--status", choices=[s.value for s in VideoStatus], help="Filter by status")
    videos_parser.add_argument("--limit", type=int, default=50, help="Max videos to list")
    videos_parser.add_argument("--offset", type=int, default=0, help="Skip this many videos")

    # REPUBLISH
    republish_parser = subparsers.add_parser("republish", help="Re-enqueue a pending job")
    republish_parser.add_argument("job_id", type=str, help="Job identifier")

    # QUEUE SIZE
    subparsers.add_parser("queue-size", help="Number of queued messages")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = config_lib.resolve_config(cli_dict, config_path=args.config)
    config_lib.configure_logging(config.logging.level, config.logging.format)

    if args.command == "check":
        print("Checking dependencies...")
        if ffmpeg_runner.check_ffmpeg(config.ffmpeg.ffmpeg_path):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        return

    commands = {
        "worker": cmd_worker,
        "upload": cmd_upload,
        "status": cmd_status,
        "jobs": cmd_jobs,
        "videos": cmd_videos,
        "republish": cmd_republish,
        "queue-size": cmd_queue_size,
    }

    try:
        code = commands[args.command](config, args)
    except PipelineError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
