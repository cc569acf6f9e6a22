"""Prompt builders for the chat-completions fallback.

Only the fields the model needs travel in a prompt: merchant, current
category and memo for ledger selection; the chosen ledger's category
vocabulary for category selection. Flows are numbered per request
(``Flow #0``…) and replies refer back to that local index.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..models import BookSummary, Transaction

BOOK_SYSTEM_PROMPT = "你是财务流水账本归属判断助手。只返回JSON结果，不要任何解释文字。"
CATEGORY_SYSTEM_PROMPT = (
    "你是财务流水分类助手。只返回JSON结果，不要任何解释文字，不要思考过程，直接给出答案。"
)
MEMO_SYSTEM_PROMPT = (
    "你是备注简化助手。只返回JSON结果，不要任何解释文字，不要思考过程，直接给出答案。"
)

UNKNOWN_BOOK = "未确定账本"
_EXAMPLE_PRIMARY_COUNT: int = 3

_CATEGORY_REPLY_FORMAT = """输出格式（严格 JSON 数组）：
[
  {{
    "index": 0,
    "flowType": "{flow_type_hint}",
    "primaryCategory": "一级分类名称（如：餐饮、交通、购物等）",
    "secondaryCategory": "二级分类名称（可选，如：午餐、地铁等）",
    "industryType": "若包含二级分类，请输出 一级分类名/二级分类名（如：餐饮/午餐）；否则只输出一级分类名（如：餐饮）",
    "description": "简化后的备注（必须提供）",
    "confidence": 0.0-1.0
  }}
]"""


def format_book_list(books: Sequence[BookSummary]) -> str:
    lines = []
    for book in books:
        desc = f"\n  描述: {book.description}" if book.description else ""
        lines.append(f"- {book.book_name} (ID: {book.book_id}){desc}")
    return "\n\n".join(lines)


def build_book_prompt(flows: Sequence[Transaction], books: Sequence[BookSummary]) -> str:
    flow_lines = "\n\n".join(
        f"Flow #{i}:\n交易对象: {t.name or ''}\n当前分类: {t.industry_type or ''}\n备注: {t.description or ''}"
        for i, t in enumerate(flows)
    )
    return f"""你是一个财务流水账本归属判断助手。以下是可选账本信息：
{format_book_list(books) or "（暂无账本）"}

请根据流水的交易对象、分类和备注，判断每条流水应该归属于哪个账本。只返回结果，不要推理过程。

输出格式（严格 JSON 数组）：
[
  {{"index": 0, "bookId": "账本ID", "confidence": 0.95}},
  {{"index": 1, "bookId": "", "confidence": 0.3}}
]

要求：
1. bookId: 从上述账本列表中选择，无法判断则置空字符串
2. confidence: 0.0-1.0 的置信度
3. 只输出 JSON，不要任何解释文字

流水数据：
{flow_lines}"""


def _category_flow_lines(flows: Sequence[Transaction], book: BookSummary | None) -> str:
    book_name = book.book_name if book else UNKNOWN_BOOK
    return "\n\n".join(
        f"Flow #{i}:\n当前分类: {t.industry_type or ''}\n交易对象: {t.name or ''}"
        f"\n备注: {t.description or ''}\n流水归属: {book_name}"
        for i, t in enumerate(flows)
    )


def build_category_prompt(flows: Sequence[Transaction], book: BookSummary | None) -> str:
    """Category prompt; with a ledger its vocabulary is offered as preferred choices."""

    flow_lines = _category_flow_lines(flows, book)
    if book is None:
        reply_format = _CATEGORY_REPLY_FORMAT.format(flow_type_hint="支出/收入/转账")
        return f"""为下列流水匹配分类并简化备注。只返回JSON结果，不要任何解释文字。

{flow_lines}

{reply_format}

要求：
1. 根据当前分类、交易对象、备注匹配合适的分类。
2. industryType 必须输出具体的分类名称，不能输出"一级"这样的占位符。如果只有一级分类，输出一级分类名称；如果有二级分类，输出"一级分类名/二级分类名"。
3. description 必须提供简化后的备注。
4. 只输出 JSON，不要任何解释文字。"""

    primary = "、".join(book.primary_categories) or "无"
    secondary = "、".join(book.secondary_categories) or "无"
    flow_types = "、".join(book.flow_types) or "无"

    examples: list[str] = []
    if book.primary_categories:
        examples.append(f"一级分类示例: {'、'.join(book.primary_categories[:_EXAMPLE_PRIMARY_COUNT])}")
    if book.secondary_categories:
        sample = book.secondary_categories[0]
        if len(sample.split("/")) == 2:
            examples.append(f"二级分类格式示例: {sample} (格式: 一级/二级)")

    reply_format = _CATEGORY_REPLY_FORMAT.format(flow_type_hint="支出/收入/转账（必须从上述类型中选择）")
    return f"""为下列流水匹配分类并简化备注。只返回JSON结果，不要任何解释文字。

账本"{book.book_name}"的分类信息：
类型: {flow_types}
一级分类: {primary}
二级分类: {secondary}
{chr(10).join(examples)}

流水数据：
{flow_lines}

{reply_format}

要求：
1. 优先从账本已有分类中选择最贴近的分类。
2. 如果没有更接近的分类，根据当前分类格式创建新分类（遵循一级分类或一级/二级格式）。
3. industryType 必须输出具体的分类名称，不能输出"一级"这样的占位符。如果只有一级分类，输出一级分类名称；如果有二级分类，输出"一级分类名/二级分类名"。
4. description 必须提供简化后的备注（去除冗余信息，保留关键内容）。
5. flowType 必须从账本的类型中选择。
6. 只输出 JSON，不要任何解释文字。"""


def build_memo_prompt(flows: Sequence[Transaction]) -> str:
    flow_lines = "\n\n".join(f"Flow #{i}:\n备注: {t.description or ''}" for i, t in enumerate(flows))
    return f"""简化下列流水的备注，去除冗余信息，保留关键内容。只返回JSON结果，不要任何解释文字。

{flow_lines}

输出格式（严格 JSON 数组）：
[
  {{"index": 0, "description": "简化后的备注"}},
  {{"index": 1, "description": "简化后的备注"}}
]

要求：
1. 去除冗余信息（如：商户号、订单号、时间戳等）。
2. 保留关键内容（如：商户名称、商品名称、交易类型等）。
3. 如果原备注为空或无效，返回空字符串。
4. 只输出 JSON，不要任何解释文字。"""
