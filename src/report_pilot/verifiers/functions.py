"""
Function Allow-list Verifier
============================

Only functions on the dialect's allow-list may be called. File, network,
sleep and configuration functions are denied on every dialect.
"""

from report_pilot.models import Violation, ViolationRule
from report_pilot.verifiers.base import Verifier
from report_pilot.verifiers.parsing import ParsedQuery

COMMON_FUNCTIONS = frozenset(
    {
        # aggregates
        "count", "sum", "avg", "min", "max",
        # conditionals
        "coalesce", "nullif", "cast", "greatest", "least",
        # numeric
        "abs", "round", "floor", "ceil", "ceiling", "sign", "mod", "power", "sqrt", "exp",
        "ln", "log", "trunc",
        # text
        "lower", "upper", "length", "trim", "ltrim", "rtrim", "substr", "substring",
        "replace", "concat", "position", "extract",
        # window
        "row_number", "rank", "dense_rank", "ntile", "lag", "lead", "first_value",
        "last_value", "nth_value", "percent_rank", "cume_dist",
    }
)

DIALECT_FUNCTIONS: dict[str, frozenset[str]] = {
    "postgres": frozenset(
        {
            "date_trunc", "date_part", "now", "age", "to_char", "to_date", "to_timestamp",
            "to_number", "make_date", "make_interval", "justify_days", "date", "timezone",
            "string_agg", "array_agg", "json_agg", "jsonb_agg", "json_build_object",
            "jsonb_build_object", "json_object_agg", "jsonb_object_agg", "bool_and", "bool_or",
            "stddev", "stddev_pop", "stddev_samp", "variance", "var_pop", "var_samp",
            "percentile_cont", "percentile_disc", "mode", "corr", "covar_pop", "covar_samp",
            "regr_slope", "regr_intercept", "split_part", "left", "right", "lpad", "rpad",
            "initcap", "strpos", "regexp_replace", "regexp_matches", "regexp_match", "md5",
            "generate_series", "random", "width_bucket", "unnest", "array_length",
            "cardinality", "format", "btrim", "char_length", "octet_length", "translate",
            "reverse", "repeat", "starts_with", "to_json", "to_jsonb", "json_array_elements",
            "jsonb_array_elements", "jsonb_extract_path_text", "json_extract_path_text",
            "array_to_string", "concat_ws", "div", "cbrt", "degrees", "radians", "pi",
            "isfinite", "date_bin", "num_nonnulls", "num_nulls", "any_value",
        }
    ),
    "sqlite": frozenset(
        {
            "date", "time", "datetime", "julianday", "strftime", "unixepoch", "ifnull",
            "iif", "instr", "printf", "format", "group_concat", "string_agg", "total",
            "typeof", "hex", "quote", "char", "unicode", "random", "likely", "unlikely",
            "json", "json_extract", "json_object", "json_array", "json_array_length",
            "json_group_array", "json_group_object", "json_type", "json_valid",
            "zeroblob", "soundex", "glob", "like", "pi", "degrees", "radians", "log10",
            "log2",
        }
    ),
    "mssql": frozenset(
        {
            "datepart", "datename", "dateadd", "datediff", "datediff_big", "datefromparts",
            "datetrunc", "eomonth", "getdate", "getutcdate", "sysdatetime", "year", "month",
            "day", "isnull", "iif", "choose", "len", "datalength", "charindex", "patindex",
            "left", "right", "format", "string_agg", "concat_ws", "convert", "try_cast",
            "try_convert", "parse", "try_parse", "stdev", "stdevp", "var", "varp", "count_big",
            "square", "log10", "pi", "degrees", "radians", "reverse", "replicate", "space",
            "stuff", "quotename", "string_split", "translate", "percentile_cont",
            "percentile_disc", "isnumeric", "isdate", "newid",
        }
    ),
}

DENIED_FUNCTIONS = frozenset(
    {
        "pg_read_file", "pg_read_binary_file", "pg_ls_dir", "pg_stat_file", "lo_import",
        "lo_export", "lo_get", "lo_put", "lo_from_bytea", "dblink", "dblink_exec",
        "dblink_connect", "pg_sleep", "pg_sleep_for", "pg_sleep_until",
        "pg_terminate_backend", "pg_cancel_backend", "pg_reload_conf", "pg_rotate_logfile",
        "set_config", "current_setting", "query_to_xml", "load_extension", "readfile",
        "writefile", "fts3_tokenizer", "edit", "xp_cmdshell", "openrowset",
        "opendatasource", "openquery", "sleep", "benchmark", "load_file", "sys_exec",
        "sys_eval", "exec", "execute",
    }
)

ALL_KNOWN_FUNCTIONS = COMMON_FUNCTIONS.union(*DIALECT_FUNCTIONS.values()) | DENIED_FUNCTIONS


def allowed_functions(dialect: str) -> frozenset[str]:
    return COMMON_FUNCTIONS | DIALECT_FUNCTIONS.get(dialect, frozenset())


class FunctionAllowlistVerifier(Verifier):
    """Validates every called function against the dialect allow-list."""

    @property
    def name(self) -> str:
        return "FunctionAllowlistVerifier"

    def verify(self, query: ParsedQuery, context: dict) -> list[Violation]:
        allowed = allowed_functions(context.get("dialect", "postgres"))
        violations = []
        for function in query.functions:
            if function in query.cte_names:
                continue
            base_name = function.rsplit(".", 1)[-1]
            if base_name in DENIED_FUNCTIONS:
                violations.append(
                    Violation(ViolationRule.DISALLOWED_FUNCTION, f"function '{function}' is never allowed")
                )
            elif base_name not in allowed:
                violations.append(
                    Violation(ViolationRule.DISALLOWED_FUNCTION, f"function '{function}' is not on the allow-list")
                )
        return violations
