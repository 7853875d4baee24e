"""Background workers for PawMotion."""

from pawmotion.workers.video_poll_worker import run_video_poll_worker

__all__ = ["run_video_poll_worker"]
