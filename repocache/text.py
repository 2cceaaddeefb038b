"""Centralized user-facing text for repocache."""

from __future__ import annotations


class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TITLE = "bold cyan"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "repocache – cached parsing and git-synced semantic index for source repositories."
    HELP_VERBOSE = "Enable debug logging."
    HELP_DATA_DIR = "Directory holding the ledger, blobs and vector store."
    HELP_INDEX_PATH = "Repository root to reconcile against its git HEAD."
    HELP_INDEX_FORCE = "Drop the existing collection and rebuild it from scratch."
    HELP_SEARCH_QUERY = "Text used to find semantically similar source files."
    HELP_SEARCH_PATH = "Repository root whose collection will be searched."
    HELP_SEARCH_TOP = "Number of results to display."
    HELP_SEARCH_TESTS = "Only search test classes (similarity above 0.5)."
    HELP_SEARCH_WHERE = "Metadata equality filter as key=value (repeatable)."
    HELP_STATUS_PATH = "Repository root to describe."
    HELP_PATTERNS_DIR = "Directory (relative to the repository root) to summarize."
    HELP_PATTERNS_REFRESH = "Recompute the summary instead of reading the cache."
    HELP_PAGE_OBJECTS_TERM = "Optional search term; lists every page object when omitted."
    HELP_CACHE = "Inspect and maintain the local cache ledger."
    HELP_CACHE_STATS = "Show cache ledger statistics."
    HELP_CACHE_SWEEP = "Delete expired records and orphaned blobs."
    HELP_CACHE_CLEAR = "Remove every cached record, pattern and blob."
    HELP_CACHE_INVALIDATE = "Forget cached artifacts for the given files."
    HELP_SHOW_CONFIG = "Show current configuration."
    HELP_SET_API_KEY = "Persist an API key in ~/.repocache/config.json."
    HELP_CLEAR_API_KEY = "Remove the stored API key."
    HELP_SET_PROVIDER = "Set the embedding provider."
    HELP_SET_MODEL = "Set the embedding model."
    HELP_SET_BASE_URL = "Set a custom API base URL."
    HELP_CLEAR_BASE_URL = "Remove the custom API base URL."
    HELP_INVALIDATE_PATHS = "Files whose cached artifacts should be dropped."
    HELP_SET_BATCH = "Set the reconcile batch size."

    ERROR_API_KEY_MISSING = (
        "Embedding API key is missing. Configure it via "
        "`repocache config --set-api-key <token>` or an environment variable."
    )
    ERROR_API_KEY_INVALID = "Embedding API key is invalid. Verify the stored token and try again."
    ERROR_NO_EMBEDDINGS = "Embedding provider returned no embeddings."
    ERROR_EMBEDDING_COUNT = "Embedding provider returned {got} vectors for {expected} inputs."
    ERROR_OPENAI_PREFIX = "OpenAI API request failed: "
    ERROR_GENAI_PREFIX = "Gemini API request failed: "
    ERROR_VOYAGE_PREFIX = "Voyage AI API request failed: "
    ERROR_PROVIDER_INVALID = "Unsupported provider '{value}'. Allowed values: {allowed}."
    ERROR_CUSTOM_BASE_URL_REQUIRED = "Custom provider requires a base URL."
    ERROR_INPUT_TYPE_INVALID = "Unsupported input type '{value}'. Use 'document' or 'query'."
    ERROR_LOCAL_DEP_MISSING = (
        "Local embeddings require the optional 'fastembed' package. "
        "Install it with `pip install repocache[local]`."
    )
    ERROR_LOCAL_MODEL_LOAD = "Failed to load local model {model}: {reason}"
    ERROR_LOCAL_MODEL_EMBED = "Local embedding failed: {reason}"
    ERROR_PARSER_MISSING = (
        "Java parsing requires 'tree-sitter' and 'tree-sitter-java'. "
        "Install them with pip."
    )
    ERROR_PARSE_FAILED = "Failed to parse {path}: {reason}"
    ERROR_EMPTY_QUERY = "Query text must not be empty."
    ERROR_EMBEDDER_MISSING = "No embedding backend is configured."
    ERROR_NOT_INDEXED = "Repository {path} is not indexed. Run `repocache index --path \"{path}\"` first."
    ERROR_LEDGER_INIT = "Unable to initialize cache ledger at {path}: {reason}"
    ERROR_GIT_FAILED = "git {command} failed in {path}: {reason}"
    ERROR_GIT_TIMEOUT = "git {command} timed out after {timeout:.0f}s in {path}."
    ERROR_VECTOR_STORE = "Vector store operation '{operation}' failed: {reason}"
    ERROR_RECONCILE_STEP = "Reconcile step '{step}' failed for {path}: {reason}"
    ERROR_CONFIG_JSON_INVALID = "Config payload must be a JSON object."
    ERROR_CONFIG_VALUE_INVALID = "Invalid config value for '{field}'."
    ERROR_WHERE_INVALID = "Filter '{value}' must look like key=value."

    INFO_RECONCILE_RUNNING = "Reconciling {path} against git HEAD..."
    INFO_RECONCILE_NOOP = "Index already matches {commit}; nothing to do."
    INFO_RECONCILE_FULL = "Indexed {count} files at {commit} (full build)."
    INFO_RECONCILE_INCREMENTAL = (
        "Updated {count} changed files, removed {removed} stale entries at {commit}."
    )
    INFO_NO_RESULTS = "No matching files found."
    INFO_NO_PAGE_OBJECTS = "No page objects found."
    INFO_BASE_URL_CLEARED = "Base URL cleared."
    INFO_STATUS_MISSING = "Repository {path} is not indexed."
    INFO_STATUS_SUMMARY = (
        "Files indexed: {files}\n"
        "Last commit: {commit}\n"
        "Last indexed: {indexed_at}"
    )
    INFO_CACHE_SWEPT = (
        "Removed {records} expired records, {artifacts} expired artifacts, "
        "{patterns} expired patterns and {blobs} orphaned blobs."
    )
    INFO_CACHE_CLEARED = "Cache cleared."
    INFO_CACHE_CLEAR_FAILED = "Cache could not be fully cleared; see logs."
    INFO_CACHE_INVALIDATED = "Invalidated {count} cached file record{plural}."
    INFO_API_SAVED = "API key saved."
    INFO_API_CLEARED = "API key cleared."
    INFO_PROVIDER_SET = "Default provider set to {value}."
    INFO_MODEL_SET = "Default model set to {value}."
    INFO_BASE_URL_SET = "Base URL set to {value}."
    INFO_BATCH_SET = "Reconcile batch size set to {value}."
    INFO_CONFIG_SUMMARY = (
        "API key set: {api}\n"
        "Provider: {provider}\n"
        "Model: {model}\n"
        "Base URL: {base_url}\n"
        "Batch size: {batch}\n"
        "Embedding concurrency: {concurrency}\n"
        "Extract concurrency: {extract_concurrency}\n"
        "Data dir: {data_dir}"
    )

    TABLE_TITLE = "Similar source files"
    TABLE_HEADER_INDEX = "#"
    TABLE_HEADER_SIMILARITY = "Similarity"
    TABLE_HEADER_PATH = "File path"
    TABLE_HEADER_CLASS = "Class"
    TABLE_HEADER_TYPE = "Type"
    TABLE_STATS_TITLE = "Cache ledger"
    TABLE_STATS_KEY = "Entry"
    TABLE_STATS_VALUE = "Count"
    TABLE_PAGE_OBJECTS_TITLE = "Page objects"
    TABLE_HEADER_METHODS = "Methods"
    TABLE_PATTERNS_TITLE = "Patterns for {path}"
    TABLE_PATTERNS_KEY = "Pattern"
    TABLE_PATTERNS_VALUE = "Observed"
