"""Text-level rewriting of SQL units for the target environment."""

import re
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from ..models.config import FileGroupStrategy, TransformContext

logger = logging.getLogger(__name__)


DATABASE_NAME_VARIABLE = "DatabaseName"

_VARIABLE = re.compile(r"\$\((\w+)\)")
_DATABASE_NAME_BRACKETED = re.compile(r"\[\$\(DatabaseName\)\]", re.IGNORECASE)
_DATABASE_NAME_BARE = re.compile(r"\$\(DatabaseName\)", re.IGNORECASE)

_GO_LINE = re.compile(r"^\s*GO(?:\s+(\d+))?\s*(?:--.*)?$", re.IGNORECASE)
_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)

# A GO separator line ends a statement even without a semicolon
_GO_BOUNDARY = r"\n[ \t]*GO(?:[ \t]+\d+)?[ \t]*(?:--[^\n]*)?\r?(?=\n|\Z)"

# Statement body up to the terminating semicolon or GO line, skipping string literals
_STATEMENT_CHUNK = r"(?:'(?:[^']|'')*'|(?!" + _GO_BOUNDARY + r")[^';])"
_STATEMENT_TAIL = _STATEMENT_CHUNK + r"*;?"
_NAME = r"(?:\[(?:[^\]]|\]\])+\]|[^\s;(\[]+)"

_ADD_FILEGROUP = re.compile(
    r"ALTER\s+DATABASE\s+\S+\s+ADD\s+FILEGROUP\s+\[(?P<fg>[^\]]+)\]"
    r"(?P<tail>[^;]*?)(?:;|(?=" + _GO_BOUNDARY + r")|\Z)",
    re.IGNORECASE,
)
_ADD_FILE = re.compile(
    r"ALTER\s+DATABASE\s+\S+\s+ADD\s+(?:LOG\s+)?FILE\s*\((?P<body>" + _STATEMENT_CHUNK + r"*?)\)\s*"
    r"TO\s+FILEGROUP\s+\[(?P<fg>[^\]]+)\]\s*;?",
    re.IGNORECASE,
)
_FILENAME = re.compile(r"FILENAME\s*=\s*N?'(?:[^']|'')*'", re.IGNORECASE)
_CONTAINS_FILESTREAM = re.compile(r"\bCONTAINS\s+FILESTREAM\b", re.IGNORECASE)
_CONTAINS_MEMORY_OPTIMIZED = re.compile(r"\bCONTAINS\s+MEMORY_OPTIMIZED_DATA\b", re.IGNORECASE)

_ON_FILEGROUP = re.compile(r"(\)\s*ON\s+)\[(?P<fg>[^\]]+)\](?!\s*[.(])", re.IGNORECASE)
_TEXTIMAGE_ON = re.compile(r"\bTEXTIMAGE_ON\s+\[(?P<fg>[^\]]+)\]", re.IGNORECASE)
_PARTITION_TO = re.compile(
    r"(\bAS\s+PARTITION\s+" + _NAME + r"\s+(?:ALL\s+)?TO\s*)\((?P<list>[^)]*)\)",
    re.IGNORECASE,
)
_LIST_ITEM = re.compile(r"\[[^\]]+\]|[^\s,]+")
_RESERVED_FILEGROUPS = frozenset({"primary", "default"})

_FILESTREAM_ON = re.compile(r"\s*\bFILESTREAM_ON\s+(?:\[[^\]]+\]|\"[^\"]*\"|\w+)", re.IGNORECASE)
_FILESTREAM_COLUMN = re.compile(
    r"(\[?varbinary\]?\s*\(\s*max\s*\))\s+FILESTREAM\b(?!_)", re.IGNORECASE
)
_ENCRYPTED_WITH = re.compile(
    r"\s*\bENCRYPTED\s+WITH\s*\((?:[^()]|\([^()]*\))*\)", re.IGNORECASE
)
_COLUMN_KEY_STATEMENT = re.compile(
    r"CREATE\s+COLUMN\s+(?:MASTER|ENCRYPTION)\s+KEY\b" + _STATEMENT_TAIL, re.IGNORECASE
)

_FOR_LOGIN = re.compile(r"\b(?:FOR|FROM)\s+LOGIN\s+(?:\[[^\]]*\]|[^\s;]+)", re.IGNORECASE)
_IMPLICIT_DOMAIN_USER = re.compile(
    r"(\bCREATE\s+USER\s+\[[^\]]*\\[^\]]*\])(?!\s+WITHOUT\s+LOGIN\b)", re.IGNORECASE
)

_SECRET_STATEMENTS: List[Tuple[str, "re.Pattern"]] = [
    ("MasterKey", re.compile(r"CREATE\s+MASTER\s+KEY\b" + _STATEMENT_TAIL, re.IGNORECASE)),
    ("SymmetricKey", re.compile(
        r"CREATE\s+SYMMETRIC\s+KEY\s+(?P<name>" + _NAME + r")" + _STATEMENT_TAIL, re.IGNORECASE)),
    ("Certificate", re.compile(
        r"CREATE\s+CERTIFICATE\s+(?P<name>" + _NAME + r")" + _STATEMENT_TAIL, re.IGNORECASE)),
    ("ApplicationRole", re.compile(
        r"CREATE\s+APPLICATION\s+ROLE\s+(?P<name>" + _NAME + r")" + _STATEMENT_TAIL, re.IGNORECASE)),
]
MISSING_SECRET_TOKEN = "$(Secret:{key})"
_PASSWORD_VALUE = re.compile(
    r"(PASSWORD\s*=\s*)(?:(N?)'(?:[^']|'')*'|\$\(Secret:[^)]*\))", re.IGNORECASE
)


def quote_identifier(name: str) -> str:
    """Bracket-quote an identifier, doubling closing brackets."""
    return "[" + name.replace("]", "]]") + "]"


def _unquote(name: str) -> str:
    if name.startswith("[") and name.endswith("]"):
        return name[1:-1].replace("]]", "]")
    return name


def strip_comments(sql: str) -> str:
    """Remove block and line comments."""
    return _LINE_COMMENT.sub("", _BLOCK_COMMENT.sub("", sql))


def discover_filegroups(text: str) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """
    Find FILESTREAM and MEMORY_OPTIMIZED_DATA filegroups declared in a script.

    Returns:
        (filestream filegroups, memory-optimized filegroups), names lower-cased
    """
    filestream: Set[str] = set()
    memory_optimized: Set[str] = set()
    for match in _ADD_FILEGROUP.finditer(strip_comments(text)):
        tail = match.group("tail")
        if _CONTAINS_FILESTREAM.search(tail):
            filestream.add(match.group("fg").lower())
        elif _CONTAINS_MEMORY_OPTIMIZED.search(tail):
            memory_optimized.add(match.group("fg").lower())
    return frozenset(filestream), frozenset(memory_optimized)


@dataclass(frozen=True)
class Batch:
    """One GO-delimited batch."""
    sql: str
    repeat: int = 1
    line: int = 1  # First line of the batch in the transformed text


@dataclass
class TransformResult:
    """Output of the rewriting pipeline for one unit."""
    text: str
    batches: List[Batch] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    unresolved_variables: List[str] = field(default_factory=list)
    missing_secrets: List[str] = field(default_factory=list)

    @property
    def executable(self) -> bool:
        return bool(self.batches)


def split_batches(text: str) -> List[Batch]:
    """
    Split a script on ``GO`` separator lines.

    Accepts leading and trailing whitespace, a trailing ``--`` comment and a
    repeat count (``GO 3``). Batches holding only comments and whitespace are
    dropped.
    """
    batches: List[Batch] = []
    current: List[str] = []
    start_line = 1

    def flush(repeat: int, next_line: int) -> None:
        nonlocal current, start_line
        sql = "\n".join(current).strip("\n")
        if strip_comments(sql).strip():
            batches.append(Batch(sql=sql, repeat=max(repeat, 1), line=start_line))
        current = []
        start_line = next_line

    lines = text.splitlines()
    for number, line in enumerate(lines, 1):
        match = _GO_LINE.match(line)
        if match:
            flush(int(match.group(1)) if match.group(1) else 1, number + 1)
        else:
            current.append(line)
    flush(1, len(lines) + 1)
    return batches


class SqlUnitTransformer:
    """
    Rewrites a unit's SQL text for the target environment and splits it
    into batches.

    Stages run in a fixed order: variable substitution, database name,
    filegroup strategy, FILESTREAM and Always Encrypted stripping, login
    conversion, secret injection, batch splitting. Running the pipeline on
    its own output yields the same text.
    """

    def __init__(self):
        """Initialize the transformer."""
        self._stages = self._register_stages()

    def _register_stages(self) -> List[Tuple[str, Callable]]:
        """Register the rewriting stages in execution order."""
        return [
            ("variables", self._substitute_variables),
            ("database_name", self._substitute_database_name),
            ("file_groups", self._apply_file_group_strategy),
            ("filestream", self._strip_filestream),
            ("always_encrypted", self._strip_always_encrypted),
            ("logins", self._convert_logins),
            ("secrets", self._inject_secrets),
        ]

    def transform(self, text: str, context: TransformContext, unit_name: str = "") -> TransformResult:
        """
        Run the full pipeline over one unit's text.

        Args:
            text: Raw SQL text
            context: Run-wide transform context
            unit_name: Name used in warnings

        Returns:
            TransformResult with the rewritten text and its batches
        """
        result = TransformResult(text=text)

        for name, stage in self._stages:
            before = result.text
            result.text = stage(before, context, result)
            if result.text != before:
                logger.debug(f"{unit_name}: {name} stage rewrote the text")

        result.unresolved_variables = sorted({
            m.group(1) for m in _VARIABLE.finditer(strip_comments(result.text))
        })
        for variable in result.unresolved_variables:
            result.warnings.append(f"Unresolved variable $({variable})")

        result.batches = split_batches(result.text)

        if result.warnings:
            logger.debug(f"{unit_name}: {len(result.warnings)} transform warning(s)")
        return result

    # Stage 1: substitution variables

    def _substitute_variables(self, text: str, context: TransformContext, result: TransformResult) -> str:
        values = {
            k.lower(): v for k, v in context.variables.items()
            if k.lower() != DATABASE_NAME_VARIABLE.lower()
        }

        def replace(match):
            value = values.get(match.group(1).lower())
            return match.group(0) if value is None else value

        return _VARIABLE.sub(replace, text)

    # Stage 2: target database name

    def _substitute_database_name(self, text: str, context: TransformContext, result: TransformResult) -> str:
        if not context.database:
            return text
        quoted = quote_identifier(context.database)
        text = _DATABASE_NAME_BRACKETED.sub(lambda m: quoted, text)
        return _DATABASE_NAME_BARE.sub(lambda m: quoted, text)

    # Stage 3: filegroup strategy

    def _apply_file_group_strategy(self, text: str, context: TransformContext, result: TransformResult) -> str:
        strategy = context.file_group_strategy
        if strategy == FileGroupStrategy.EXPLICIT_MAPPING:
            return self._explicit_mapping(text, context)
        if strategy == FileGroupStrategy.AUTO_REMAP:
            return self._auto_remap(text, context, result)
        return self._remove_to_primary(text, context, result)

    def _explicit_mapping(self, text: str, context: TransformContext) -> str:
        values = {k.lower(): v for k, v in context.file_group_variables.items()}

        def replace(match):
            value = values.get(match.group(1).lower())
            return match.group(0) if value is None else value

        return _VARIABLE.sub(replace, text)

    def _auto_remap(self, text: str, context: TransformContext, result: TransformResult) -> str:
        filestream, memory_optimized = discover_filegroups(text)
        containers = filestream | memory_optimized | context.filestream_filegroups | context.memory_optimized_filegroups
        base = context.default_data_path
        counters: Dict[str, int] = {}

        if base is None and _ADD_FILE.search(text):
            result.warnings.append("autoRemap: default data path unknown, FILENAME left unchanged")

        def remap_file(match):
            fg = match.group("fg")
            if base is None:
                return match.group(0)
            counters[fg.lower()] = counters.get(fg.lower(), 0) + 1
            n = counters[fg.lower()]
            stem = f"{context.database}_{fg}" + (f"_{n}" if n > 1 else "")
            if fg.lower() in containers:
                path = self._join_path(base, stem)
            else:
                path = self._join_path(base, stem + ".ndf")
            filename = "FILENAME = N'" + path.replace("'", "''") + "'"
            return _FILENAME.sub(lambda m: filename, match.group(0), count=1)

        text = _ADD_FILE.sub(remap_file, text)

        configured = {k.lower(): v for k, v in context.file_group_variables.items()}
        configured.update({k.lower(): v for k, v in context.variables.items()})

        def replace_sizing(match):
            name = match.group(1)
            lowered = name.lower()
            if lowered in configured:
                return configured[lowered]
            if lowered.endswith("_size"):
                return context.auto_remap_size
            if lowered.endswith("_growth"):
                return context.auto_remap_growth
            return match.group(0)

        return _VARIABLE.sub(replace_sizing, text)

    @staticmethod
    def _join_path(base: str, name: str) -> str:
        separator = "\\" if ("\\" in base or re.match(r"^[A-Za-z]:", base)) else "/"
        return base.rstrip("\\/") + separator + name

    def _remove_to_primary(self, text: str, context: TransformContext, result: TransformResult) -> str:
        _, memory_optimized = discover_filegroups(text)
        keep = memory_optimized | context.memory_optimized_filegroups | _RESERVED_FILEGROUPS
        removed: Set[str] = set()

        def drop_filegroup(match):
            fg = match.group("fg")
            if fg.lower() in keep or _CONTAINS_MEMORY_OPTIMIZED.search(match.group("tail")):
                return match.group(0)
            removed.add(fg)
            return ""

        def drop_file(match):
            fg = match.group("fg")
            if fg.lower() in keep:
                return match.group(0)
            removed.add(fg)
            return ""

        text = _ADD_FILEGROUP.sub(drop_filegroup, text)
        text = _ADD_FILE.sub(drop_file, text)

        def to_primary(match):
            if match.group("fg").lower() in keep:
                return match.group(0)
            removed.add(match.group("fg"))
            return match.group(1) + "[PRIMARY]"

        text = _ON_FILEGROUP.sub(to_primary, text)
        text = _TEXTIMAGE_ON.sub(
            lambda m: m.group(0) if m.group("fg").lower() in keep else "TEXTIMAGE_ON [PRIMARY]",
            text,
        )

        def partition_list(match):
            items = _LIST_ITEM.findall(match.group("list"))
            mapped = [
                item if _unquote(item).lower() in keep else "[PRIMARY]"
                for item in items
            ]
            return match.group(1) + "(" + ", ".join(mapped) + ")"

        text = _PARTITION_TO.sub(partition_list, text)

        if removed and _FILESTREAM_ON.search(text) and not context.strip_filestream:
            result.warnings.append(
                "FILESTREAM_ON refers to a filegroup that removeToPrimary does not create; "
                "enable strip_filestream for this target"
            )
        return text

    # Stage 4: FILESTREAM and Always Encrypted

    def _strip_filestream(self, text: str, context: TransformContext, result: TransformResult) -> str:
        if not context.strip_filestream:
            return text
        filestream, _ = discover_filegroups(text)
        filestream = filestream | context.filestream_filegroups

        text = _ADD_FILEGROUP.sub(
            lambda m: "" if _CONTAINS_FILESTREAM.search(m.group("tail")) else m.group(0), text
        )
        text = _ADD_FILE.sub(
            lambda m: "" if m.group("fg").lower() in filestream else m.group(0), text
        )
        text = _FILESTREAM_ON.sub("", text)
        return _FILESTREAM_COLUMN.sub(lambda m: m.group(1), text)

    def _strip_always_encrypted(self, text: str, context: TransformContext, result: TransformResult) -> str:
        if not context.strip_always_encrypted:
            return text
        text = _COLUMN_KEY_STATEMENT.sub("", text)
        return _ENCRYPTED_WITH.sub("", text)

    # Stage 5: logins

    def _convert_logins(self, text: str, context: TransformContext, result: TransformResult) -> str:
        if not context.convert_logins_to_contained:
            return text
        text = _FOR_LOGIN.sub("WITHOUT LOGIN", text)
        return _IMPLICIT_DOMAIN_USER.sub(lambda m: m.group(1) + " WITHOUT LOGIN", text)

    # Stage 6: secrets

    def _inject_secrets(self, text: str, context: TransformContext, result: TransformResult) -> str:
        for prefix, pattern in _SECRET_STATEMENTS:
            text = pattern.sub(
                lambda m, prefix=prefix: self._inject_statement(m, prefix, context, result), text
            )
        return text

    def _inject_statement(self, match, prefix: str, context: TransformContext, result: TransformResult) -> str:
        statement = match.group(0)
        if not _PASSWORD_VALUE.search(statement):
            return statement

        key = prefix
        if "name" in match.groupdict() and match.group("name"):
            key = f"{prefix}.{_unquote(match.group('name'))}"

        secret = self._lookup_secret(context.secrets, key)
        if secret is None:
            if key not in result.missing_secrets:
                result.missing_secrets.append(key)
                result.warnings.append(f"No secret configured for {key}; password replaced with a placeholder")
            # The placeholder is not valid T-SQL, so the statement fails if executed
            return _PASSWORD_VALUE.sub(
                lambda m: f"{m.group(1)}{MISSING_SECRET_TOKEN.format(key=key)}", statement
            )

        escaped = secret.replace("'", "''")
        return _PASSWORD_VALUE.sub(
            lambda m: f"{m.group(1)}{m.group(2) or ''}'{escaped}'", statement
        )

    @staticmethod
    def _lookup_secret(secrets: Dict[str, str], key: str) -> Optional[str]:
        if key in secrets:
            return secrets[key]
        lowered = key.lower()
        for name, value in secrets.items():
            if name.lower() == lowered:
                return value
        return None
