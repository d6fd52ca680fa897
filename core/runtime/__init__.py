"""
Runtime Layer — Backend execution adapters with retry and cancellation.

Runs a prompt against one of several interchangeable execution backends,
streams partial output to the caller, and normalizes failures into a
closed taxonomy so one retry policy applies to every backend.

Modules:
- types: RuntimeContext, RunOptions, RunResult, StreamDelta, RunCallbacks
- cancellation: CancellationToken — cooperative cancellation for one run
- classifier: ErrorClassifier — raw failure → ClassifiedError
- token_cache: TokenCache — short-lived credentials, deduplicated refresh
- messages: decode_message — tagged union over backend stream messages
- adapters: BackendAdapter + SDK-backed and HTTP-backed variants
- retry: RetryPolicy — bounded exponential backoff
- runner: Runner — adapter selection, retry loop, in-flight registry
"""
