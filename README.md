# jobmesh

jobmesh keeps track of work handed out to a pool of workers. It also keeps a
small network of coordinating nodes in agreement about which node leads.

It has three modules:

- `jobmesh.job_database`: a persistent job queue backed by SQLite.
- `jobmesh.networking`: `NetworkHandler`, a small TCP client.
- `jobmesh.raft`: `RaftConsensus`, which handles leader discovery, heartbeats
  and membership tracking.

It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The job queue

`JobDatabase` stores three kinds of jobs:

- queued jobs;
- jobs currently handed out;
- jobs that failed.

It also stores a shared crawl ID. A `Job` is a dataclass with the fields `url`,
`priority`, `retries`, `timeout`, `jobid` and `time`. Times are in
milliseconds. `FailedJob` adds `reason_id` and `reason_data`.

```python
from jobmesh.job_database import Job, JobDatabase

with JobDatabase() as db:
    db.connect("jobs.sqlite3")   # creates the tables if needed

    db.upload_job(Job(url="https://example.com/repo", priority=0, timeout=60_000), True)
    job = db.get_top_job()        # None if the queue is empty
    print(job.url, job.jobid, job.time)

    db.get_current_job_time(job.jobid)        # start time, or None
    finished = db.get_current_job(job.jobid)  # removed from the current jobs, or None
```

### Queueing and handing out jobs

- `upload_job(job, new_job)`: with `new_job=True` the job gets a fresh UUID and
  a priority of the current time minus `job.priority`. With `new_job=False` it
  keeps its `jobid` and `priority`.
- `get_top_job()`: takes the queued job with the lowest priority value and
  records it as a current job. It returns the job with its start time set.
- `add_current_job(job)`: records a job as a current job and returns the time
  it recorded.

### Failed jobs and timeouts

- `add_failed_job(failed_job)` and `failed_jobs()` write and list the failed
  jobs.
- `check_timeouts(current_time)` looks for current jobs whose start time plus
  timeout lies before `current_time`. It records each one as failed with
  reason ID 2. It then requeues the job with its retry count increased, if it
  had fewer than `MAX_JOB_RETRIES` retries. It returns the jobs that timed out.
- `update_current_jobs(stop_event)` runs `check_timeouts` every
  `update_interval` seconds (300 by default) until the `threading.Event` is
  set.

### Counts and the crawl ID

- `get_number_of_jobs()` returns a cached queue size. It counts the queue
  again only when more than `RECOUNT_WAIT_TIME` (600) seconds have passed
  since the last count.
- `get_crawl_id()` and `set_crawl_id(crawl_id)` read and write the crawl ID.

### Clock and errors

The constructor takes an optional `clock` function that returns milliseconds,
which makes the timing logic testable. Database failures, and use of the
database before `connect`, raise `JobDatabaseError`.

## Talking to other nodes

`NetworkHandler` opens one outgoing TCP connection. It can also be used as a
context manager.

- `open_connection(server, port)` connects.
- `send_data(data)` sends text or bytes.
- `receive_data(stop_on_newline=True)` has two modes:
  - By default it reads until the data ends in a newline and returns the data
    without that newline. It raises `ConnectionError` if the peer closes first.
  - With `False` it reads until the peer closes the connection.
- `close()` closes the connection.

Fields are separated by `?` (`FIELD_DELIMITER`) and entries by a newline
(`ENTRY_DELIMITER`).

## Coordinating nodes

```python
from jobmesh.raft import RaftConsensus

raft = RaftConsensus()                 # port 8003, heartbeat every second
ips = raft.get_ips(".env")             # reads SEEDS=a,b,c and IP=... lines
raft.start(handler, ips, False)        # follow a seed's leader, or lead
...
raft.shutdown()
```

### Joining the network

`start(handler, ips, assume_leader)` tries each seed address in turn. A seed
that is not the leader answers with the leader's address, which is followed
until a node answers `ok`. If no seed answers, or `assume_leader` is true, the
node becomes leader.

### As leader

The leader:

- sends heartbeats to every connected node;
- runs `handler.database.update_current_jobs` if the handler has a `database`.

A heartbeat carries the handler's `crawl_id` and the nodes added (`A`) or
removed (`R`) since the last heartbeat.

### As follower

A follower applies the heartbeats it receives. It sets `handler.crawl_id` and
keeps its list of the other followers. When the leader drops, the first
follower in that list becomes the new leader. The others connect to it.

### Other methods

- `is_leader()` and `get_my_ip()` report this node's role and address.
- `get_current_ips()` lists the connected nodes' addresses, followed by this
  node's own.
- `pass_request_to_leader(request_type, client, request)` forwards a request
  and returns the leader's reply, or `""` if the request fails.
- `connect_new_node(connection, request)` admits a joining node on the leader.
  On a follower it returns the leader's address.
- `handle_heartbeat`, `handle_initial_data`, `get_heartbeat` and
  `drop_connection` expose the message handling directly.

## What this package does not do

jobmesh has no command-line program. It also has no server that accepts
incoming connections or dispatches requests.

The code that accepts a joining node's socket and serves requests on it must
be provided by the application. `connect_new_node` expects a connection object
that has:

- a `send_data(data)` method, used for heartbeats;
- a `start(handler, connection, stats)` method, used to serve that node's
  requests.

Likewise, the handler passed to `start` is the application's own. jobmesh only
reads and sets its `crawl_id` and uses its optional `database`.