"""Shared I/O thread pool for the ReelVault server.

The local object store (part assembly, directory walks) and the S3 object
store (boto3 is synchronous) both run blocking calls here. A single shared
``ThreadPoolExecutor`` keeps the event loop free without creating redundant
pools.
"""

from concurrent.futures import ThreadPoolExecutor

io_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="rv-io")
