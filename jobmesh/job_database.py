"""Persistent job queue: queued, in-progress and failed jobs, plus the crawl ID."""

from __future__ import annotations

import sqlite3
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

UPDATE_JOBS_TIMEOUT = 300.0  # seconds between timeout sweeps (5 minutes)
MAX_JOB_RETRIES = 1
RECOUNT_WAIT_TIME = 600  # seconds before the cached queue size is recounted
TIMEOUT_REASON_ID = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobsqueue (
    jobid TEXT NOT NULL,
    priority INTEGER NOT NULL,
    url TEXT NOT NULL,
    retries INTEGER NOT NULL,
    timeout INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS currentjobs (
    jobid TEXT PRIMARY KEY,
    time INTEGER NOT NULL,
    timeout INTEGER NOT NULL,
    priority INTEGER NOT NULL,
    url TEXT NOT NULL,
    retries INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS failedjobs (
    jobid TEXT NOT NULL,
    time INTEGER NOT NULL,
    timeout INTEGER NOT NULL,
    priority INTEGER NOT NULL,
    url TEXT NOT NULL,
    retries INTEGER NOT NULL,
    reasonID INTEGER NOT NULL,
    reasonData TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS variables (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
INSERT OR IGNORE INTO variables (name, value) VALUES ('crawlID', 0);
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    """A unit of work: a repository url with its scheduling data."""

    url: str = ""
    priority: int = 0
    retries: int = 0
    timeout: int = 0
    jobid: str = ""
    time: int = 0


@dataclass
class FailedJob(Job):
    """A job that failed, with the reason it failed."""

    reason_id: int = 0
    reason_data: str = ""

    @classmethod
    def from_job(cls, job: Job, reason_id: int, reason_data: str) -> "FailedJob":
        return cls(
            url=job.url,
            priority=job.priority,
            retries=job.retries,
            timeout=job.timeout,
            jobid=job.jobid,
            time=job.time,
            reason_id=reason_id,
            reason_data=reason_data,
        )


class JobDatabaseError(Exception):
    """Raised when the job database cannot be reached or a query fails."""


class JobDatabase:
    """Stores and hands out jobs, tracking those in progress and those that failed."""

    def __init__(self, clock: Optional[Callable[[], int]] = None,
                 update_interval: float = UPDATE_JOBS_TIMEOUT) -> None:
        self._clock = clock or _now_ms
        self.update_interval = update_interval
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._number_of_jobs = 0
        self._time_last_recount = -1

    def __enter__(self) -> "JobDatabase":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def connect(self, path: str) -> None:
        """Open (and if needed create) the database at ``path``."""
        try:
            conn = sqlite3.connect(path, check_same_thread=False)
            conn.executescript(_SCHEMA)
            conn.commit()
        except sqlite3.Error as exc:
            raise JobDatabaseError(f"Unable to connect to job database: {exc}") from exc
        with self._lock:
            self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _execute(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            if self._conn is None:
                raise JobDatabaseError("Not connected to the job database.")
            try:
                rows = self._conn.execute(sql, params).fetchall()
                self._conn.commit()
            except sqlite3.Error as exc:
                raise JobDatabaseError(str(exc)) from exc
            return rows

    def _now_seconds(self) -> int:
        return self._clock() // 1000

    def upload_job(self, job: Job, new_job: bool) -> None:
        """Queue a job.

        A new job gets a fresh id and a priority relative to the current time;
        a retried job keeps its id and stored priority.
        """
        if new_job:
            jobid = str(uuid.uuid4())
            priority = self._clock() - job.priority
        else:
            jobid = job.jobid
            priority = job.priority
        with self._lock:
            self._number_of_jobs += 1
            self._execute(
                "INSERT INTO jobsqueue (jobid, priority, url, retries, timeout) VALUES (?, ?, ?, ?, ?)",
                (jobid, priority, job.url, job.retries, job.timeout),
            )

    def get_top_job(self) -> Optional[Job]:
        """Take the first job off the queue and mark it as in progress.

        Returns None when the queue is empty.
        """
        with self._lock:
            rows = self._execute(
                "SELECT rowid, jobid, priority, url, retries, timeout FROM jobsqueue "
                "ORDER BY priority, rowid LIMIT 1"
            )
            if not rows:
                return None
            rowid, jobid, priority, url, retries, timeout = rows[0]
            job = Job(url=url, priority=priority, retries=retries, timeout=timeout, jobid=jobid)
            job.time = self.add_current_job(job)
            self._number_of_jobs -= 1
            self._execute("DELETE FROM jobsqueue WHERE rowid = ?", (rowid,))
            return job

    def get_current_job_time(self, jobid: str) -> Optional[int]:
        """Return the start time of an in-progress job, or None if it is unknown."""
        rows = self._execute("SELECT time FROM currentjobs WHERE jobid = ?", (jobid,))
        return rows[0][0] if rows else None

    def add_current_job(self, job: Job) -> int:
        """Record ``job`` as in progress now and return the time recorded."""
        current_time = self._clock()
        self._execute(
            "INSERT OR REPLACE INTO currentjobs (jobid, time, timeout, priority, url, retries) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (job.jobid, current_time, job.timeout, job.priority, job.url, job.retries),
        )
        return current_time

    def get_current_job(self, jobid: str) -> Optional[Job]:
        """Remove and return the in-progress job with ``jobid``, or None if absent."""
        with self._lock:
            rows = self._execute(
                "SELECT jobid, time, timeout, priority, url, retries FROM currentjobs WHERE jobid = ?",
                (jobid,),
            )
            if not rows:
                return None
            job = self._row_to_job(rows[0])
            self._delete_current_job(jobid)
            return job

    def _delete_current_job(self, jobid: str) -> None:
        self._execute("DELETE FROM currentjobs WHERE jobid = ?", (jobid,))

    @staticmethod
    def _row_to_job(row: tuple) -> Job:
        jobid, job_time, timeout, priority, url, retries = row
        return Job(url=url, priority=priority, retries=retries, timeout=timeout,
                   jobid=jobid, time=job_time)

    def _current_jobs(self) -> Iterator[Job]:
        rows = self._execute("SELECT jobid, time, timeout, priority, url, retries FROM currentjobs")
        return (self._row_to_job(row) for row in rows)

    def add_failed_job(self, job: FailedJob) -> None:
        self._execute(
            "INSERT INTO failedjobs (jobid, time, timeout, priority, url, retries, reasonID, reasonData) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (job.jobid, job.time, job.timeout, job.priority, job.url, job.retries,
             job.reason_id, job.reason_data),
        )

    def failed_jobs(self) -> list[FailedJob]:
        rows = self._execute(
            "SELECT jobid, time, timeout, priority, url, retries, reasonID, reasonData "
            "FROM failedjobs ORDER BY rowid"
        )
        return [
            FailedJob(jobid=jobid, time=t, timeout=timeout, priority=priority, url=url,
                      retries=retries, reason_id=reason_id, reason_data=reason_data)
            for jobid, t, timeout, priority, url, retries, reason_id, reason_data in rows
        ]

    def get_number_of_jobs(self) -> int:
        """Return the queue size, recounting only after RECOUNT_WAIT_TIME seconds."""
        with self._lock:
            if self._now_seconds() - self._time_last_recount > RECOUNT_WAIT_TIME:
                (count,), = self._execute("SELECT COUNT(*) FROM jobsqueue")
                self._time_last_recount = self._now_seconds()
                self._number_of_jobs = count
            return self._number_of_jobs

    def get_crawl_id(self) -> int:
        rows = self._execute("SELECT value FROM variables WHERE name = 'crawlID'")
        return rows[0][0] if rows else 0

    def set_crawl_id(self, crawl_id: int) -> None:
        self._execute("UPDATE variables SET value = ? WHERE name = 'crawlID'", (crawl_id,))

    def check_timeouts(self, current_time: int) -> list[Job]:
        """Move timed-out in-progress jobs to the failed list, requeuing those with retries left.

        Returns the jobs that timed out.
        """
        timed_out = []
        with self._lock:
            for job in list(self._current_jobs()):
                if job.time + job.timeout >= current_time:
                    continue
                self.add_failed_job(
                    FailedJob.from_job(job, TIMEOUT_REASON_ID, f"Timed out at: {current_time}")
                )
                self._delete_current_job(job.jobid)
                if job.retries < MAX_JOB_RETRIES:
                    job.retries += 1
                    self.upload_job(job, False)
                timed_out.append(job)
        return timed_out

    def update_current_jobs(self, stop_event: threading.Event) -> None:
        """Sweep for timed-out jobs every ``update_interval`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(self.update_interval):
            try:
                self.check_timeouts(self._clock())
            except JobDatabaseError as exc:
                print(f"Unable to get current jobs: '{exc}'", file=sys.stderr)