"""
Publishes render job state changes for live-progress listeners.
The pipeline only produces events; fan-out to browsers happens elsewhere.
"""

import json
import logging

import redis

from config import REDIS_URL, RENDER_EVENTS_CHANNEL


def job_event(job) -> dict:
    return {
        "id": job.id,
        "project_id": job.project_id,
        "status": job.status,
        "progress": job.progress,
        "error": job.error,
        "output_url": job.output_url,
    }


class LoggingJobNotifier:
    """Notifier used when no message broker is configured."""

    def publish(self, job):
        logging.debug(f"Render event: {job_event(job)}")


class RedisJobNotifier:
    """Publishes job events on a Redis pub/sub channel."""

    def __init__(self, url: str = REDIS_URL, channel: str = RENDER_EVENTS_CHANNEL):
        self.client = redis.Redis.from_url(url)
        self.channel = channel

    def publish(self, job):
        try:
            self.client.publish(self.channel, json.dumps(job_event(job)))
        except redis.RedisError as e:
            # A missed progress event must never fail the render itself
            logging.warning(f"Could not publish render event for job {job.id}: {e}")
