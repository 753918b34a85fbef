from __future__ import annotations

import fakeredis

from jobqueue.drivers.base import DriverConfig
from jobqueue.drivers.redis_driver import RedisStorageDriver


def fake_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


def make_redis_driver(*, client=None, registry=None, prefix: str = "", **kwargs) -> RedisStorageDriver:
    config = DriverConfig(
        name="redis",
        retry_delay_s=0.0,
        driver_specific_config={"queue": "default", "prefix": prefix, "block_timeout_s": 0},
    )
    return RedisStorageDriver(config, client=client or fake_client(), registry=registry, **kwargs)
