"""
列表查詢的條件組合與分頁

每個條件都是 (SQL 片段, 綁定值) 的組合,最後才一次序列化成
帶 ? placeholder 的 predicate 和依序排列的綁定值,值永遠不會被
拼接進 SQL 字串。

count 查詢和分頁查詢共用同一個 predicate,確保 total / totalPages
和回傳的資料一致。
"""
import json
import math
import re
from decimal import Decimal
from typing import NamedTuple, Optional, Tuple

from marshmallow import Schema, fields, validate, ValidationError, EXCLUDE
from sqlalchemy import text

from models import db, TASK_STATUSES, TASK_PRIORITIES, PROJECT_STATUSES, TIMESHEET_STATUSES
from tokens import Role

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# id 欄位是 32-bit INTEGER,page 也用同一個上限 (offset 才不會超過 64-bit)
MAX_INT_VALUE = 2**31 - 1
LIKE_ESCAPE = '!'


# ============================================
# Predicate 組合
# ============================================

class Clause(NamedTuple):
    sql: str
    values: Tuple = ()


class Predicate(NamedTuple):
    sql: str
    values: Tuple

    def as_named(self, prefix='p'):
        """
        轉成 sqlalchemy.text() 用的具名參數

        "t.status = ?" -> ("t.status = :p0", {'p0': 'todo'})
        """
        pieces = self.sql.split('?')
        if len(pieces) - 1 != len(self.values):
            raise ValueError("Placeholder count does not match bound values")

        sql = pieces[0]
        params = {}
        for index, (value, piece) in enumerate(zip(self.values, pieces[1:])):
            name = f'{prefix}{index}'
            sql += f':{name}{piece}'
            params[name] = value
        return sql, params


class PredicateBuilder:
    """依序累積 AND 條件,column 名稱只能來自程式碼,不能來自使用者輸入"""

    def __init__(self):
        self._clauses = []

    def add(self, clause: Optional[Clause]):
        if clause is not None:
            self._clauses.append(clause)
        return self

    def equals(self, column, value):
        return self.add(Clause(f'{column} = ?', (value,)))

    def at_least(self, column, value):
        return self.add(Clause(f'{column} >= ?', (value,)))

    def at_most(self, column, value):
        return self.add(Clause(f'{column} <= ?', (value,)))

    def like_any(self, columns, term):
        """子字串搜尋,term 裡的 % 和 _ 當一般字元"""
        pattern = f'%{escape_like(term)}%'
        sql = '(' + ' OR '.join(f"{column} LIKE ? ESCAPE '{LIKE_ESCAPE}'" for column in columns) + ')'
        return self.add(Clause(sql, (pattern,) * len(columns)))

    def build(self) -> Predicate:
        if not self._clauses:
            return Predicate('1=1', ())

        values = []
        for clause in self._clauses:
            values.extend(clause.values)
        return Predicate(' AND '.join(clause.sql for clause in self._clauses), tuple(values))


def escape_like(term):
    for char in (LIKE_ESCAPE, '%', '_'):
        term = term.replace(char, LIKE_ESCAPE + char)
    return term


def visibility_clause(role, caller_id) -> Optional[Clause]:
    """
    任務可見範圍

    一般使用者只能看到自己建立或被指派的任務,admin 不受限制
    """
    if Role(role) is Role.ADMIN:
        return None
    return Clause('(t.created_by = ? OR t.assigned_to = ?)', (caller_id, caller_id))


# ============================================
# 分頁
# ============================================

class Pagination(NamedTuple):
    page: int
    limit: int

    @property
    def offset(self):
        return (self.page - 1) * self.limit

    def total_pages(self, total):
        return math.ceil(total / self.limit)

    def meta(self, total):
        return {
            'page': self.page,
            'limit': self.limit,
            'total': total,
            'totalPages': self.total_pages(total)
        }


class QueryFilter(NamedTuple):
    predicate: Predicate
    pagination: Pagination

    @property
    def bound_values(self):
        return self.predicate.values

    @property
    def page(self):
        return self.pagination.page

    @property
    def limit(self):
        return self.pagination.limit

    @property
    def offset(self):
        return self.pagination.offset


# ============================================
# Query string 驗證 Schemas (用 marshmallow)
# ============================================

def _one_of(choices, label):
    return validate.OneOf(choices, error=f"{label} must be one of: {', '.join(choices)}")


class DigitsInt(fields.Int):
    """
    query string 的整數只接受 0-9

    int() 會接受 "1_0"、"+3"、"-0" 之類的寫法,這裡一律視為格式錯誤
    """
    DIGITS = re.compile(r'[0-9]+')

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, str) and not self.DIGITS.fullmatch(value):
            raise self.make_error('invalid')
        return super()._deserialize(value, attr, data, **kwargs)


def _int_field(label, data_key=None, min_value=1, **kwargs):
    return DigitsInt(
        data_key=data_key,
        validate=validate.Range(
            min=min_value,
            max=MAX_INT_VALUE,
            error=f'{label} must be between {min_value} and {MAX_INT_VALUE}'
        ),
        error_messages={'invalid': f'{label} must be a number'},
        **kwargs
    )


class PageSchema(Schema):
    """分頁參數"""

    class Meta:
        unknown = EXCLUDE

    page = _int_field('Page')
    limit = _int_field('Limit')
    search = fields.Str(validate=validate.Length(max=255))


class TaskFilterSchema(PageSchema):
    project_id = _int_field('Project ID', data_key='projectId')
    status = fields.Str(validate=_one_of(TASK_STATUSES, 'Status'))
    priority = fields.Str(validate=_one_of(TASK_PRIORITIES, 'Priority'))
    assigned_to = _int_field('Assignee ID', data_key='assignedTo')
    module_name = fields.Str(data_key='moduleName', validate=validate.Length(max=255))


class ProjectFilterSchema(PageSchema):
    status = fields.Str(validate=_one_of(PROJECT_STATUSES, 'Status'))


class TimesheetFilterSchema(PageSchema):
    status = fields.Str(validate=_one_of(TIMESHEET_STATUSES, 'Status'))
    task_id = _int_field('Task ID', data_key='taskId')
    project_id = _int_field('Project ID', data_key='projectId')
    user_id = _int_field('User ID', data_key='userId')
    date_from = fields.Date(data_key='from', error_messages={'invalid': 'Date must be in YYYY-MM-DD format'})
    date_to = fields.Date(data_key='to', error_messages={'invalid': 'Date must be in YYYY-MM-DD format'})


def _load_params(schema_class, params):
    """
    統一的 query string 驗證

    空字串視為沒有帶這個參數
    Returns:
        tuple: (is_valid, data_or_errors)
    """
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        cleaned[key] = value

    try:
        return True, schema_class().load(cleaned)
    except ValidationError as err:
        return False, err.messages


def _pagination(data, default_limit, max_limit):
    limit = min(data.get('limit', default_limit), max_limit)
    return Pagination(page=data.get('page', 1), limit=limit)


# ============================================
# 各列表的條件組合
# ============================================

TASK_SEARCH_COLUMNS = ('t.title', 't.description', 't.module_name')
PROJECT_SEARCH_COLUMNS = ('p.name', 'p.description')


def build_task_filter(params, identity, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE):
    """
    任務列表的查詢條件

    順序固定: project -> status -> priority -> assignee -> module -> search,
    非 admin 最後一定會加上可見範圍條件 (不能由前端參數關掉)

    Returns:
        tuple: (True, QueryFilter) 或 (False, errors)
    """
    is_valid, data = _load_params(TaskFilterSchema, params)
    if not is_valid:
        return False, data

    builder = PredicateBuilder()
    if 'project_id' in data:
        builder.equals('t.project_id', data['project_id'])
    if 'status' in data:
        builder.equals('t.status', data['status'])
    if 'priority' in data:
        builder.equals('t.priority', data['priority'])
    if 'assigned_to' in data:
        builder.equals('t.assigned_to', data['assigned_to'])
    if 'module_name' in data:
        builder.equals('t.module_name', data['module_name'])
    if 'search' in data:
        builder.like_any(TASK_SEARCH_COLUMNS, data['search'])

    builder.add(visibility_clause(identity.role, identity.user_id))

    return True, QueryFilter(builder.build(), _pagination(data, default_limit, max_limit))


def build_project_filter(params, identity, default_limit=10, max_limit=MAX_PAGE_SIZE):
    """專案是整個團隊共用的,所以沒有可見範圍條件"""
    is_valid, data = _load_params(ProjectFilterSchema, params)
    if not is_valid:
        return False, data

    builder = PredicateBuilder()
    if 'status' in data:
        builder.equals('p.status', data['status'])
    if 'search' in data:
        builder.like_any(PROJECT_SEARCH_COLUMNS, data['search'])

    return True, QueryFilter(builder.build(), _pagination(data, default_limit, max_limit))


def build_timesheet_filter(params, identity, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE):
    """
    工時紀錄的查詢條件

    一般使用者只能看自己的紀錄,userId 參數只有 admin 有效
    """
    is_valid, data = _load_params(TimesheetFilterSchema, params)
    if not is_valid:
        return False, data

    builder = PredicateBuilder()
    if 'project_id' in data:
        builder.equals('e.project_id', data['project_id'])
    if 'task_id' in data:
        builder.equals('e.task_id', data['task_id'])
    if 'status' in data:
        builder.equals('e.status', data['status'])
    if 'date_from' in data:
        builder.at_least('e.date', data['date_from'].isoformat())
    if 'date_to' in data:
        builder.at_most('e.date', data['date_to'].isoformat())
    if 'search' in data:
        builder.like_any(('e.description',), data['search'])

    if identity.is_admin:
        if 'user_id' in data:
            builder.equals('e.user_id', data['user_id'])
    else:
        builder.equals('e.user_id', identity.user_id)

    return True, QueryFilter(builder.build(), _pagination(data, default_limit, max_limit))


# ============================================
# 執行 (交給資料庫)
# ============================================

def fetch_page(select_sql, from_sql, query_filter, order_by):
    """
    執行 count 查詢和分頁查詢

    兩個查詢用同一組 predicate 和綁定值
    Returns:
        tuple: (rows, pagination dict)
    """
    where, params = query_filter.predicate.as_named()

    total = db.session.execute(
        text(f'SELECT COUNT(*) {from_sql} WHERE {where}'),
        params
    ).scalar_one()

    page_params = dict(params, limit=query_filter.limit, offset=query_filter.offset)
    result = db.session.execute(
        text(f'{select_sql} {from_sql} WHERE {where} ORDER BY {order_by} LIMIT :limit OFFSET :offset'),
        page_params
    )
    rows = [serialize_row(row) for row in result.mappings()]

    return rows, query_filter.pagination.meta(total)


def serialize_row(row):
    data = {}
    for key, value in row.items():
        if hasattr(value, 'isoformat'):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = float(value)
        data[key] = value
    return data


def parse_tags(value):
    """tags 欄位在某些 driver 會是 JSON 字串"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    try:
        tags = json.loads(value)
    except (TypeError, ValueError):
        return []
    return tags if isinstance(tags, list) else []
