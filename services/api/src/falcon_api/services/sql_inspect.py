"""只读 SQL 的轻量静态检查。

不是完整的 SQL 解析器：目标是在授权阶段以“宁可误拒”的方式
找出语句引用的表与标识符。无法识别的写法会被当作未授权表处理。
"""

import re

_LITERAL_OR_COMMENT = re.compile(r"'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)
_SOURCE_CLAUSE = re.compile(r"\b(?:from|join|into|update)\s+", re.IGNORECASE)
_BARE_IDENT = re.compile(r"[A-Za-z_][\w$]*")
_ANY_IDENT = re.compile(r'"([^"]+)"|`([^`]+)`|\[([^\]]+)\]|([A-Za-z_][\w$]*)')
_ALIAS = re.compile(r'(?:as\s+)?("[^"]+"|`[^`]+`|[A-Za-z_][\w$]*)', re.IGNORECASE)
_CTE_NAME = re.compile(
    r'(?:\bwith(?:\s+recursive)?|,)\s*("[^"]+"|`[^`]+`|[A-Za-z_][\w$]*)\s*(?:\([^)]*\)\s*)?as\s*\(',
    re.IGNORECASE,
)
_FIRST_WORD = re.compile(r"\s*\(*\s*([A-Za-z]+)")
_MUTATING_WORDS = re.compile(
    r"\b(insert|into|update|delete|merge|upsert|drop|alter|create|truncate|grant|revoke|"
    r"copy|call|execute|exec|lock|vacuum|attach|detach|pragma|set)\b",
    re.IGNORECASE,
)
_UNICODE_ESCAPE = re.compile(r"\bu&\s*[\"']", re.IGNORECASE)
_ROW_SERIALIZERS = re.compile(r"\b(row_to_json|to_json|to_jsonb|json_agg|jsonb_agg|row)\s*\(", re.IGNORECASE)
_SELECT_ITEM_START = re.compile(r"(?:,|\bselect|\bdistinct|\ball)\s*$", re.IGNORECASE)
_SELECT_ITEM_END = re.compile(r"\s*(?:,|from\b|$)", re.IGNORECASE)
_QUOTES = {'"': '"', "`": "`", "[": "]"}

# 出现在表名之后、不应被当作别名的关键字。
_CLAUSE_KEYWORDS = frozenset(
    {
        "where", "join", "on", "using", "group", "order", "limit", "offset", "fetch", "having",
        "union", "intersect", "except", "inner", "left", "right", "full", "outer", "cross",
        "natural", "lateral", "window", "for", "set", "values", "returning", "select", "straight_join",
    }
)


def _strip_literals_and_comments(sql: str) -> str:
    """字符串字面量替换为空串，注释替换为空白。"""
    return _LITERAL_OR_COMMENT.sub(lambda m: "''" if m.group(0).startswith("'") else " ", sql)


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def _prev_char(text: str, pos: int) -> str:
    pos -= 1
    while pos >= 0 and text[pos].isspace():
        pos -= 1
    return text[pos] if pos >= 0 else ""


def _matching_paren(text: str, pos: int) -> int:
    depth = 0
    for index in range(pos, len(text)):
        if text[index] == "(":
            depth += 1
        elif text[index] == ")":
            depth -= 1
            if depth == 0:
                return index
    return -1


def _unquote(name: str) -> str:
    return name.strip('"`')


def _read_identifier(text: str, pos: int) -> tuple[str | None, int]:
    if pos >= len(text):
        return None, pos
    closing = _QUOTES.get(text[pos])
    if closing:
        end = text.find(closing, pos + 1)
        if end == -1:
            return None, pos
        return text[pos + 1 : end], end + 1
    match = _BARE_IDENT.match(text, pos)
    if not match:
        return None, pos
    return match.group(0), match.end()


def _read_table_ref(text: str, pos: int) -> tuple[str | None, int]:
    """读取 `name` 或 `schema.name`。"""
    name, pos = _read_identifier(text, pos)
    if name is None:
        return None, pos
    after = _skip_ws(text, pos)
    if after < len(text) and text[after] == ".":
        second, pos = _read_identifier(text, _skip_ws(text, after + 1))
        if second is None:
            return None, pos
        name = f"{name}.{second}"
    return name, pos


def _scan_relations(text: str) -> tuple[list[str], set[str], set[int]]:
    """扫描 FROM / JOIN 与 CTE。

    返回 (表名列表, 表与别名集合, 声明位置集合)。
    表名保序去重；别名集合为小写；声明位置是表名、别名、CTE 名在文本中的起点。
    """
    tables: list[str] = []
    relations: set[str] = set()
    declared: set[int] = set()
    for match in _SOURCE_CLAUSE.finditer(text):
        pos = match.end()
        while True:
            if pos < len(text) and text[pos] == "(":
                # 子查询内部的 FROM 会被单独匹配到，这里只跳过并读取其别名。
                end = _matching_paren(text, pos)
                if end == -1:
                    break
                pos = end + 1
            else:
                start = pos
                name, pos = _read_table_ref(text, pos)
                if name is None:
                    break
                declared.add(start)
                if name not in tables:
                    tables.append(name)
                relations.add(name.rpartition(".")[2].casefold())
            pos = _skip_ws(text, pos)
            alias = _ALIAS.match(text, pos)
            if alias and _unquote(alias.group(1)).lower() not in _CLAUSE_KEYWORDS:
                declared.add(alias.start(1))
                relations.add(_unquote(alias.group(1)).casefold())
                pos = _skip_ws(text, alias.end())
            if pos < len(text) and text[pos] == ",":
                pos = _skip_ws(text, pos + 1)
                continue
            break
    for match in _CTE_NAME.finditer(text):
        declared.add(match.start(1))
        relations.add(_unquote(match.group(1)).casefold())
    return tables, relations, declared


def extract_table_names(sql: str) -> list[str]:
    """提取 FROM / JOIN（含逗号连接）中引用的表名，保序去重。"""
    tables, _, _ = _scan_relations(_strip_literals_and_comments(sql))
    return tables


def referenced_identifiers(sql: str) -> set[str]:
    """返回语句中出现的全部标识符（小写），用于屏蔽列检查。"""
    text = _strip_literals_and_comments(sql)
    names: set[str] = set()
    for match in _ANY_IDENT.finditer(text):
        value = next(group for group in match.groups() if group is not None)
        names.add(value.casefold())
    return names


def uses_unicode_escapes(sql: str) -> bool:
    """是否含 `U&"..."` 形式的转义标识符，这类写法无法按列名比对。"""
    return _UNICODE_ESCAPE.search(_strip_literals_and_comments(sql)) is not None


def row_serializers(sql: str) -> list[str]:
    """返回语句中把整行序列化为单个值的函数名（小写），保序去重。"""
    found: list[str] = []
    for match in _ROW_SERIALIZERS.finditer(_strip_literals_and_comments(sql)):
        name = match.group(1).lower()
        if name not in found:
            found.append(name)
    return found


def whole_row_references(sql: str) -> list[str]:
    """找出以整行形式引用的表或别名（如 `SELECT u FROM users u`），保序去重。

    `u.col` 形式的限定列引用不算；`u.*` 只允许作为独立的选择项出现，
    放进函数参数或类型转换时同样视为整行引用。
    """
    text = _strip_literals_and_comments(sql)
    _, relations, declared = _scan_relations(text)
    found: list[str] = []
    for match in _ANY_IDENT.finditer(text):
        start, end = match.span()
        name = next(group for group in match.groups() if group is not None).casefold()
        if name not in relations or start in declared or _prev_char(text, start) == ".":
            continue
        after = _skip_ws(text, end)
        if after < len(text) and text[after] == "(":
            continue
        if after < len(text) and text[after] == ".":
            star = _skip_ws(text, after + 1)
            if star >= len(text) or text[star] != "*":
                continue
            if _SELECT_ITEM_START.search(text, 0, start) and _SELECT_ITEM_END.match(text, star + 1):
                continue
        if name not in found:
            found.append(name)
    return found


def is_read_only_statement(sql: str) -> bool:
    """判断是否为单条 SELECT / WITH 查询且不含数据修改关键字。"""
    text = _strip_literals_and_comments(sql).strip()
    text = text.rstrip(";").strip()
    if not text or ";" in text:
        return False
    first = _FIRST_WORD.match(text)
    if not first or first.group(1).lower() not in {"select", "with"}:
        return False
    return _MUTATING_WORDS.search(text) is None
