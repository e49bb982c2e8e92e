from __future__ import annotations
from typing import Any, Dict, Mapping
from flask import abort


def split_csv(value: str):
    """``'A,B'`` -> ``['A', 'B']``; blanks dropped."""
    return [part.strip() for part in str(value).split(',') if part.strip()]


def apply_filters(query, specs: Dict[str, Dict[str, Any]], params: Mapping[str, Any]):
    """Apply query-string filters described by specs.

    specs: { param_name: { 'op': callable(query, value)->query,
                           'coerce': callable(raw)->value (optional),
                           'validate': callable(value)->bool (optional) } }
    A failing coerce or validate answers 400 naming the parameter.
    """
    for name, meta in specs.items():
        raw = params.get(name)
        if raw is None or raw == '':
            continue
        val = raw
        if 'coerce' in meta:
            try:
                val = meta['coerce'](raw)
            except (TypeError, ValueError):
                abort(400, description=f'{name} invalid')
        if 'validate' in meta and not meta['validate'](val):
            abort(400, description=f'{name} invalid')
        query = meta['op'](query, val)
    return query
