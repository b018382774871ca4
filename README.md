# blocky

Building blocks for a DNS proxy that blocks ads and tracking domains,
caches answers and keeps a log of the queries it handled. Messages are
`dnspython` messages throughout.

## What is inside

- `blocky.log` – the shared logger. `configure_logger(level, format_type,
  log_timestamp)` takes a `Level` (info, trace, debug, warn, error, fatal)
  and a `FormatType` (text or JSON), or their names as strings.
  `get_logger()` returns the global logger, `prefixed_log(prefix)` a logger
  that tags each record with a component name, and `silence()` discards all
  output. `escape_input(text)` strips line breaks from text before it is
  logged. `parse_level` and `parse_format_type` turn names into members and
  raise `ValueError` on unknown names.
- `blocky.model` – the types passed between resolvers: the dataclasses
  `Request` (client IP, client names, protocol, query message, logger,
  timestamp) and `Response` (message, reason, type), and the enums
  `ResponseType` (RESOLVED, CACHED, BLOCKED, CONDITIONAL, CUSTOMDNS,
  HOSTSFILE, FILTERED, NOTFQDN, SPECIAL) and `RequestProtocol` (TCP, UDP).
  `parse_response_type` and `parse_request_protocol` raise `ValueError` on
  unknown names.
- `blocky.querylog` – query log writers sharing the `Writer` interface,
  `write(entry)` and `clean_up()`, for a `LogEntry` (request, response,
  start time, duration in milliseconds):
  - `blocky.querylog.writer.NoneWriter` drops every entry;
  - `blocky.querylog.writer.LoggerWriter` writes each query as an info
    record "query resolved" with the client, question, answer, response
    code and duration as fields;
  - `blocky.querylog.file_writer.FileWriter(target, per_client,
    log_retention_days)` appends tab-separated lines to
    `<YYYY-MM-DD>_<client>.log` files (`ALL` instead of the client names
    unless `per_client` is set), and `clean_up()` deletes files older than
    the retention period when that is above zero;
  - `blocky.querylog.database_writer.DatabaseWriter(url, log_retention_days,
    flush_period)` takes a SQLAlchemy URL, buffers entries and writes them
    in bulk every `flush_period` seconds (or `timedelta`). It also offers
    `flush()`, `count()`, `close()` and use as a context manager;
    `clean_up()` deletes rows older than the retention period.
    `create_database_writer(db_type, target, log_retention_days,
    flush_period)` accepts `"mysql"` or `"postgresql"` and raises
    `ValueError` for any other type; a connection that cannot be made
    raises `ConnectionError`.
- `blocky.redis_sync` – `RedisClient` shares cached answers and the blocking
  on/off state between several instances over the `blocky_sync` channel.
  Answers from other instances arrive on its `cache_channel` queue, state
  changes on `enabled_channel`. `create_client(RedisConfig(...))` returns
  `None` when no address is configured.
- `blocky.caching_resolver` – `CachingResolver(config, next_resolver,
  redis_client)` keeps answers for their TTL, clamped to the minimum and
  maximum of `CachingConfig` (a negative maximum turns caching off),
  caches NXDOMAIN answers for `cache_time_negative` seconds and, with
  `prefetching`, refreshes domains queried more than `prefetch_threshold`
  times before they expire. Call `close()` to stop its background threads.
- `blocky.blocking_resolver` – `BlockingResolver(config, blacklist_matcher,
  whitelist_matcher, next_resolver, redis_client)` checks queried names, and
  the IPs and CNAMEs in the next resolver's answers, against per-group
  `Matcher` lists. Groups are chosen by client name (with wildcards), IP,
  CIDR or fully qualified name, falling back to the `default` entry of
  `client_groups_block`. Blocked queries are answered with the zero IP,
  NXDOMAIN or custom addresses, as `create_block_handler(config)` decides
  from `block_type`. `disable_blocking(duration, groups)` switches blocking
  off for all or some groups, forever (0) or for a number of seconds, and
  raises `ValueError` for an unknown group; `enable_blocking()` turns it
  back on and `blocking_status()` reports the state.

A resolver passed as `next_resolver` is any object with a
`resolve(request)` method returning a `Response`.

## Example: blocking a listed domain

```python
import dns.message

from blocky.blocking_resolver import BlockingConfig, BlockingResolver, Matcher
from blocky.model import Request, Response


class Upstream:
    def resolve(self, request):
        return Response(res=dns.message.make_response(request.req))


config = BlockingConfig(
    black_lists={"ads": ["ads.txt"]},
    client_groups_block={"default": ["ads"]},
)
resolver = BlockingResolver(config, Matcher({"ads": ["ads.example.com"]}), Matcher(), Upstream())

response = resolver.resolve(Request(req=dns.message.make_query("ads.example.com.", "A")))
print(response.reason)  # BLOCKED (ads), answered with 0.0.0.0
```

## Example: a per-client file query log

```python
from blocky.querylog.file_writer import FileWriter

writer = FileWriter("/var/log/blocky", True, 7)
# writer.write(entry) for each handled query, writer.clean_up() once a day
```

The target directory must already exist; constructing a `FileWriter` for a
missing directory raises `FileNotFoundError`.

## Example: quieter logging

```python
from blocky.log import FormatType, Level, configure_logger, prefixed_log

configure_logger(Level.WARN, FormatType.JSON, True)
prefixed_log("resolver").warning("upstream slow")
```

## What this package does not do

- It is not a running DNS server: there is no listener, no command and no
  configuration file reader. Resolvers are combined and called from your
  own code.
- It does not download block or allow lists. A `Matcher` is filled with
  entries directly or from a loader function you supply; `refresh_lists()`
  calls that loader again.
- It has no upstream resolver that sends queries over the network, no HTTP
  API and no metrics endpoint.
- `create_database_writer` relies on SQLAlchemy's driver for MySQL or
  PostgreSQL, which is not installed with this package.

## Running the tests

The test suite uses pytest and is installed with the `test` extra:

```
pip install -e .[test]
pytest
```