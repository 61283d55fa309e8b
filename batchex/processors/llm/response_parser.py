"""
Model response parsing

Vision models answer in several shapes even when asked for one. This module
turns raw message content into a list of extraction dicts and groups them into
rows. Everything that cannot be parsed raises ``TransientJobError`` so the job
is retried.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from batchex.exceptions import TransientJobError

logger = logging.getLogger(__name__)

METADATA_FIELDS = ('bbox_2d', 'confidence', 'image_index', 'row_index')


@dataclass
class FeatureFlags:
    """Optional parts of each extraction the project asked for"""
    bounding_boxes: bool = True
    confidence_scores: bool = True
    multi_row_extraction: bool = False

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> 'FeatureFlags':
        flags = (settings or {}).get('feature_flags') or {}
        return cls(
            bounding_boxes=bool(flags.get('bounding_boxes', True)),
            confidence_scores=bool(flags.get('confidence_scores', True)),
            multi_row_extraction=bool(flags.get('multi_row_extraction', False)),
        )


def get_bbox_order(coordinate_format: Optional[str]) -> str:
    """Bounding box coordinate order shown to the model for a coordinate format"""
    if coordinate_format in ('normalized_1000_yxyx', 'normalized_1024_yxyx'):
        return '[y_min, x_min, y_max, x_max]'
    return '[x1, y1, x2, y2]'


def find_column(columns: List[Dict[str, Any]], key: Any) -> Optional[Dict[str, Any]]:
    """Match a column by exact id or case-insensitive name"""
    key = str(key)
    for column in columns:
        if str(column.get('id')) == key or str(column.get('name', '')).lower() == key.lower():
            return column
    return None


def _as_index(value: Any) -> int:
    # Models sometimes return indexes as strings or floats
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def create_extraction(
    column_id: Any,
    column_name: str,
    value: Any,
    flags: FeatureFlags,
    image_index: Optional[int] = None,
    bbox_2d: Optional[List[float]] = None,
    confidence: Optional[float] = None,
    row_index: Optional[int] = None,
    redone: Optional[bool] = None,
    has_bbox: bool = False,
    has_confidence: bool = False,
) -> Dict[str, Any]:
    """Build one extraction, keeping optional fields only when their flag is on"""
    extraction: Dict[str, Any] = {
        'column_id': str(column_id),
        'column_name': column_name,
        'value': value,
        'image_index': _as_index(image_index),
    }
    if flags.bounding_boxes and (has_bbox or bbox_2d is not None):
        extraction['bbox_2d'] = bbox_2d
    if flags.confidence_scores and (has_confidence or confidence is not None):
        extraction['confidence'] = confidence
    if flags.multi_row_extraction and row_index is not None:
        extraction['row_index'] = row_index
    if redone is not None:
        extraction['redone'] = redone
    return extraction


def clean_json_response(content: str) -> str:
    """Remove markdown code fences from a model response"""
    content = content.strip()
    for fence in ('```json', '```JSON', '```'):
        content = content.replace(fence, '')
    return content.strip()


def _is_simple_format(data: Any) -> bool:
    # {"Invoice Number": "123", "Total": "9.50"}
    if not isinstance(data, dict):
        return False
    return not any(isinstance(v, (dict, list)) for v in data.values())


def _transform_simple(data: Dict[str, Any], columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[Dict[str, Any]]:
    extractions = []
    for key, value in data.items():
        column = find_column(columns, key)
        if column is None:
            logger.debug(f"No matching column found for key: {key!r}")
            continue
        extractions.append(create_extraction(column['id'], column['name'], value, flags))
    return extractions


def _transform_mixed(data: Dict[str, Any], columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[Dict[str, Any]]:
    # {"field_name": "Total", "value": "9.50", "bbox_2d": [...]}
    if 'field_name' in data and 'value' in data:
        column = find_column(columns, data['field_name'])
        if column is None:
            logger.debug(f"No matching column found for field_name: {data['field_name']!r}")
            return []
        return [create_extraction(
            column['id'], column['name'], data['value'], flags,
            image_index=data.get('image_index'),
            bbox_2d=data.get('bbox_2d'),
            confidence=data.get('confidence'),
            row_index=data.get('row_index'),
        )]

    # {"Total": "9.50", "image_index": 1, "bbox_2d": [...]}
    extractions = []
    for key, value in data.items():
        if key in METADATA_FIELDS:
            continue
        column = find_column(columns, key)
        if column is None:
            logger.debug(f"No matching column found for key: {key!r}")
            continue
        extractions.append(create_extraction(
            column['id'], column['name'], value, flags,
            image_index=data.get('image_index'),
            bbox_2d=data.get('bbox_2d'),
            confidence=data.get('confidence'),
            row_index=data.get('row_index'),
        ))
    return extractions


def _normalize_extraction(item: Dict[str, Any], flags: FeatureFlags) -> Dict[str, Any]:
    return create_extraction(
        item.get('column_id'),
        item.get('column_name'),
        item.get('value'),
        flags,
        image_index=item.get('image_index'),
        bbox_2d=item.get('bbox_2d'),
        confidence=item.get('confidence'),
        row_index=item.get('row_index'),
        redone=item.get('redone'),
        has_bbox='bbox_2d' in item,
        has_confidence='confidence' in item,
    )


def load_response(raw_content: Optional[str]) -> Any:
    """Strip fences and decode the JSON body of a model response"""
    if not raw_content or not raw_content.strip():
        raise TransientJobError("Model returned an empty response")
    content = clean_json_response(raw_content)
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse model JSON response: {e}")
        raise TransientJobError(f"Model response is not valid JSON: {content[:200]}")


def parse_extractions(raw_content: Optional[str], columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[Dict[str, Any]]:
    """
    Parse model output into a flat list of extractions

    Args:
        raw_content: Message content returned by the model
        columns: Project column definitions
        flags: Feature flags controlling optional fields

    Returns:
        List of extraction dicts with string ``column_id``
    """
    data = load_response(raw_content)
    return normalize_extractions(data, columns, flags)


def normalize_extractions(data: Any, columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[Dict[str, Any]]:
    if isinstance(data, dict) and 'extractions' in data:
        data = data['extractions']

    if isinstance(data, dict) and 'rows' in data:
        return [e for row in group_rows(data, columns, flags) for e in row]

    if _is_simple_format(data):
        return _transform_simple(data, columns, flags)

    if isinstance(data, dict):
        return _transform_mixed(data, columns, flags)

    if not isinstance(data, list):
        raise TransientJobError(f"Unexpected model response type: {type(data).__name__}")

    extractions = []
    for item in data:
        if not isinstance(item, dict):
            continue
        if item.get('column_id') is None:
            extractions.extend(_transform_mixed(item, columns, flags))
        else:
            extractions.append(_normalize_extraction(item, flags))
    return extractions


def group_rows(data: Any, columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[List[Dict[str, Any]]]:
    """
    Split parsed output into rows

    A flat list whose items carry ``row_index`` is grouped by it, sorted
    ascending. A ``{"rows": [...]}`` object yields one row per entry. Anything
    else is a single row.
    """
    if isinstance(data, dict) and 'extractions' in data:
        data = data['extractions']

    if isinstance(data, dict) and 'rows' in data:
        rows = data['rows']
        if not isinstance(rows, list):
            return [_transform_mixed(rows, columns, flags)] if isinstance(rows, dict) else [[]]
        grouped = []
        for row in rows:
            if isinstance(row, list):
                grouped.append(normalize_extractions(row, columns, flags))
            elif isinstance(row, dict) and isinstance(row.get('fields'), list):
                grouped.append(normalize_extractions(row['fields'], columns, flags))
            elif isinstance(row, dict):
                grouped.append(_transform_mixed(row, columns, flags))
        return grouped

    if isinstance(data, list) and data and isinstance(data[0], dict) and isinstance(data[0].get('row_index'), int):
        by_row: Dict[int, List[Dict[str, Any]]] = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            index = item.get('row_index') or 0
            by_row.setdefault(index, []).append(item)
        return [normalize_extractions(by_row[index], columns, flags) for index in sorted(by_row)]

    return [normalize_extractions(data, columns, flags)]


def parse_rows(raw_content: Optional[str], columns: List[Dict[str, Any]], flags: FeatureFlags) -> List[List[Dict[str, Any]]]:
    """Parse model output straight into grouped rows"""
    return group_rows(load_response(raw_content), columns, flags)
