"""
Market Brain — Lua Scripts
────────────────────────────
Every queue transition is one Lua script so that it runs atomically on
the Redis server. No read-then-write pairs cross the network: two
subscription events for the same symbol cannot both see "no job" and
both insert, and two workers cannot both claim the same job.

Numbers that end up in Redis are passed in as strings from Python and
written back untouched; Lua only parses them for comparisons.
"""


class LuaScripts:

    # ─────────────────────────────────────────────────────────────────────
    # ADMISSION
    # ─────────────────────────────────────────────────────────────────────

    ENQUEUE_BATCH: str = (
        # Admit one job per requested data type unless one is already
        # outstanding or the stored record is still fresh.
        #
        # KEYS[1]: pending zset
        # KEYS[1 + 3i - 2 .. 1 + 3i]: active key, record key, job key (item i)
        # ARGV[1]: now   ARGV[2]: priority   ARGV[3]: item count
        # ARGV[3 + 6i - 5 .. 3 + 6i]: ttl_s, freshness column, new job id,
        #                             entity, data type, pending rank
        #
        # Returns one string per item:
        #   "queued:<existing id>" | "fresh:" | "admitted:<new id>"
        #
        # INVARIANT: the active key is the uniqueness constraint on
        # (entity, data type) for non-terminal jobs.
        "local now = tonumber(ARGV[1])\n"
        "local n = tonumber(ARGV[3])\n"
        "local results = {}\n"
        "for i = 1, n do\n"
        "  local k = 1 + (i - 1) * 3\n"
        "  local a = 3 + (i - 1) * 6\n"
        "  local active_key, record_key, job_key = KEYS[k + 1], KEYS[k + 2], KEYS[k + 3]\n"
        "  local ttl = tonumber(ARGV[a + 1])\n"
        "  local job_id = ARGV[a + 3]\n"
        "  local existing = redis.call('GET', active_key)\n"
        "  if existing then\n"
        "    results[i] = 'queued:' .. existing\n"
        "  else\n"
        "    local fetched = tonumber(redis.call('HGET', record_key, ARGV[a + 2]) or '')\n"
        "    if fetched and (now - fetched) < ttl then\n"
        "      results[i] = 'fresh:'\n"
        "    else\n"
        "      redis.call('SET', active_key, job_id)\n"
        "      redis.call('HSET', job_key,\n"
        "        'id', job_id, 'entity_key', ARGV[a + 4], 'data_type', ARGV[a + 5],\n"
        "        'status', 'pending', 'priority', ARGV[2], 'created_at', ARGV[1],\n"
        "        'eligible_at', ARGV[1], 'attempt_count', '1', 'rank', ARGV[a + 6])\n"
        "      redis.call('ZADD', KEYS[1], ARGV[a + 6], job_id)\n"
        "      results[i] = 'admitted:' .. job_id\n"
        "    end\n"
        "  end\n"
        "end\n"
        "return results\n"
    )

    # ─────────────────────────────────────────────────────────────────────
    # CLAIM
    # ─────────────────────────────────────────────────────────────────────

    CLAIM_NEXT: str = (
        # Promote due retries, then move the best pending job to processing.
        #
        # KEYS[1]: pending zset   KEYS[2]: delayed zset   KEYS[3]: processing zset
        # ARGV[1]: now   ARGV[2]: worker id   ARGV[3]: job key prefix
        #
        # Returns the claimed job id, or nil when nothing is claimable.
        #
        # INVARIANT: status flips pending → processing only here, guarded
        # by a status check (compare-and-set).
        "local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])\n"
        "for _, id in ipairs(due) do\n"
        "  redis.call('ZREM', KEYS[2], id)\n"
        "  local rank = redis.call('HGET', ARGV[3] .. id, 'rank')\n"
        "  if rank then\n"
        "    redis.call('ZADD', KEYS[1], rank, id)\n"
        "  end\n"
        "end\n"
        "while true do\n"
        "  local head = redis.call('ZRANGE', KEYS[1], 0, 0)\n"
        "  if #head == 0 then\n"
        "    return false\n"
        "  end\n"
        "  local id = head[1]\n"
        "  redis.call('ZREM', KEYS[1], id)\n"
        "  local job_key = ARGV[3] .. id\n"
        "  if redis.call('HGET', job_key, 'status') == 'pending' then\n"
        "    redis.call('HSET', job_key, 'status', 'processing',\n"
        "      'claimed_at', ARGV[1], 'worker_id', ARGV[2])\n"
        "    redis.call('ZADD', KEYS[3], ARGV[1], id)\n"
        "    return id\n"
        "  end\n"
        "end\n"
    )

    # ─────────────────────────────────────────────────────────────────────
    # TERMINAL TRANSITIONS
    # ─────────────────────────────────────────────────────────────────────

    COMPLETE_JOB: str = (
        # processing → complete, charging the wire bytes to today's quota.
        #
        # KEYS[1]: job   KEYS[2]: processing zset   KEYS[3]: quota counter
        # KEYS[4]: stats hash   KEYS[5]: active key
        # ARGV[1]: now   ARGV[2]: wire bytes   ARGV[3]: source ts ('' if none)
        # ARGV[4]: job id   ARGV[5]: day key ttl
        #
        # Returns "ok:<day total>" | "stale:<baseline>" | "invalid:<status>"
        "local status = redis.call('HGET', KEYS[1], 'status')\n"
        "if status ~= 'processing' then\n"
        "  return 'invalid:' .. tostring(status)\n"
        "end\n"
        "if ARGV[3] ~= '' then\n"
        "  local baseline = tonumber(redis.call('HGET', KEYS[1], 'baseline_source_ts') or '')\n"
        "  if baseline and tonumber(ARGV[3]) <= baseline then\n"
        "    return 'stale:' .. ARGV[3]\n"
        "  end\n"
        "end\n"
        "redis.call('HSET', KEYS[1], 'status', 'complete', 'finished_at', ARGV[1],\n"
        "  'wire_bytes', ARGV[2], 'source_ts', ARGV[3])\n"
        "redis.call('ZREM', KEYS[2], ARGV[4])\n"
        "if redis.call('GET', KEYS[5]) == ARGV[4] then\n"
        "  redis.call('DEL', KEYS[5])\n"
        "end\n"
        "local total = redis.call('INCRBY', KEYS[3], ARGV[2])\n"
        "redis.call('EXPIRE', KEYS[3], ARGV[5])\n"
        "redis.call('HINCRBY', KEYS[4], 'completed', 1)\n"
        "redis.call('EXPIRE', KEYS[4], ARGV[5])\n"
        "return 'ok:' .. tostring(total)\n"
    )

    FAIL_JOB: str = (
        # processing → failed; optionally spawn the retry as a new job.
        #
        # KEYS[1]: job   KEYS[2]: processing zset   KEYS[3]: active key
        # KEYS[4]: pending zset   KEYS[5]: delayed zset   KEYS[6]: retry job
        # KEYS[7]: stats hash
        # ARGV[1]: now   ARGV[2]: error   ARGV[3]: category   ARGV[4]: retryable '1'/'0'
        # ARGV[5]: max attempts   ARGV[6]: job id   ARGV[7]: retry id
        # ARGV[8]: retry eligible_at   ARGV[9]: retry rank   ARGV[10]: stats field
        # ARGV[11]: day key ttl
        #
        # Returns "retry:<new id>" | "failed:" | "invalid:<status>"
        #
        # INVARIANT: the failed job never changes status again; the active
        # key moves to the retry or is released.
        "local status = redis.call('HGET', KEYS[1], 'status')\n"
        "if status ~= 'processing' then\n"
        "  return 'invalid:' .. tostring(status)\n"
        "end\n"
        "redis.call('HSET', KEYS[1], 'status', 'failed', 'finished_at', ARGV[1],\n"
        "  'last_error', ARGV[2], 'error_category', ARGV[3])\n"
        "redis.call('ZREM', KEYS[2], ARGV[6])\n"
        "redis.call('HINCRBY', KEYS[7], ARGV[10], 1)\n"
        "redis.call('EXPIRE', KEYS[7], ARGV[11])\n"
        "local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempt_count') or '1')\n"
        "if ARGV[4] == '1' and attempts < tonumber(ARGV[5]) then\n"
        "  local job = redis.call('HMGET', KEYS[1], 'entity_key', 'data_type', 'priority')\n"
        "  redis.call('HSET', KEYS[6],\n"
        "    'id', ARGV[7], 'entity_key', job[1], 'data_type', job[2],\n"
        "    'status', 'pending', 'priority', job[3], 'created_at', ARGV[1],\n"
        "    'eligible_at', ARGV[8], 'attempt_count', tostring(attempts + 1),\n"
        "    'parent_id', ARGV[6], 'rank', ARGV[9])\n"
        "  redis.call('SET', KEYS[3], ARGV[7])\n"
        "  if tonumber(ARGV[8]) > tonumber(ARGV[1]) then\n"
        "    redis.call('ZADD', KEYS[5], ARGV[8], ARGV[7])\n"
        "  else\n"
        "    redis.call('ZADD', KEYS[4], ARGV[9], ARGV[7])\n"
        "  end\n"
        "  return 'retry:' .. ARGV[7]\n"
        "end\n"
        "if redis.call('GET', KEYS[3]) == ARGV[6] then\n"
        "  redis.call('DEL', KEYS[3])\n"
        "end\n"
        "return 'failed:'\n"
    )

    # ─────────────────────────────────────────────────────────────────────
    # STORAGE
    # ─────────────────────────────────────────────────────────────────────

    GUARDED_UPSERT: str = (
        # Write a record only if its guard value is strictly greater than
        # the stored one (source-timestamp monotonicity).
        #
        # KEYS[1]: record hash
        # ARGV[1]: guard field ('' for unconditional)   ARGV[2]: new guard value
        # ARGV[3..]: field, value pairs
        #
        # Returns 1 if written, 0 if rejected.
        "if ARGV[1] ~= '' then\n"
        "  local stored = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '')\n"
        "  local incoming = tonumber(ARGV[2])\n"
        "  if stored and incoming and incoming <= stored then\n"
        "    return 0\n"
        "  end\n"
        "end\n"
        "for i = 3, #ARGV, 2 do\n"
        "  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])\n"
        "end\n"
        "return 1\n"
    )
