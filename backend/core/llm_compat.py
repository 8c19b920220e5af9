# backend/core/llm_compat.py
# 功能: LLM Provider 兼容性工具函数
# 主要导出: normalize_content, parse_json_response, parse_json_list, coerce_json_payload
# 设计: 屏蔽 OpenAI / Anthropic 返回值差异；容错解析模型输出中的 JSON

"""
LLM Provider 兼容层。

所有直接读取 LLM 返回值的下游代码应通过本模块提供的工具函数，
而非直接访问 response.content。

用法:
    from core.llm_compat import normalize_content, parse_json_response

    text = normalize_content(response.content)
    data = parse_json_response(text)
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)


def normalize_content(content: Any) -> str:
    """
    将 LLM 返回的 content 归一化为 str。

    ChatOpenAI:     content 始终是 str
    ChatAnthropic:  content 可能是 str 或 list[dict]（内容块列表）

    对 list 输入提取所有 text 块并拼接。
    对 None / 其他类型做安全回退。
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
            else:
                parts.append(str(block))
        return "".join(parts)
    return str(content) if content else ""


def _raw_decode_dict(text: str) -> dict | None:
    try:
        obj, _ = json.JSONDecoder().raw_decode(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def parse_json_response(text: str) -> dict:
    """
    安全解析 AI 返回的 JSON（容错：处理多余的括号、前后缀文本、Markdown 代码块）。

    解析失败返回空 dict，由调用方按“空结果”处理。
    """
    text = (text or "").strip()
    if not text:
        return {}

    # 1. 直接解析
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass

    # 2. raw_decode：JSON 后面带有多余字符
    obj = _raw_decode_dict(text)
    if obj is not None:
        return obj

    # 3. Markdown 代码块
    json_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if json_match:
        obj = _raw_decode_dict(json_match.group(1).strip())
        if obj is not None:
            return obj

    # 4. 第一个 { 到最后一个 } 之间的内容
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        obj = _raw_decode_dict(text[start:end + 1])
        if obj is not None:
            return obj

    logger.warning(f"无法解析 JSON 响应: {text[:200]}")
    return {}


def parse_json_list(text: str, key: str = "items") -> list:
    """
    解析 AI 返回的 JSON 数组（容错：数组前后带说明文字）。

    也接受 {key: [...]} 形式的对象；解析失败返回空 list。
    """
    text = (text or "").strip()
    match = re.search(r"\[[\s\S]*\]", text)
    if match:
        try:
            obj = json.loads(match.group(0))
            if isinstance(obj, list):
                return obj
        except json.JSONDecodeError:
            pass
    obj = parse_json_response(text)
    value = obj.get(key)
    return value if isinstance(value, list) else []


def coerce_json_payload(payload: Any) -> dict:
    """
    服务响应既可能是已解析的 dict，也可能是 JSON 字符串。
    统一为 dict；无法识别时返回空 dict。
    """
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, (str, bytes)):
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        return parse_json_response(payload)
    return {}
