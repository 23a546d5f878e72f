# field_generator.py

import json
import random
import re
import threading
import time
import uuid
from typing import Dict, Iterable, NamedTuple, Optional

from cycle_models import ConfigError, FieldSpec, GeneratorType, logger


class GeneratedFields(NamedTuple):
    header: Dict[str, str]
    body: Dict[str, str]


class FieldGenerator:
    """
    Produces cycle-scoped field values.
    Owns the counter state; increments are guarded by a threading.Lock so that
    concurrent callers (tasks or threads) never receive the same value.
    """
    def __init__(self):
        self._counter_lock = threading.Lock()
        self._counter = 0

    def next_counter(self) -> int:
        with self._counter_lock:
            self._counter += 1
            return self._counter

    def generate(self, spec: FieldSpec) -> str:
        generator = spec.generator
        if generator == GeneratorType.RANDOM:
            return str(random.randint(1000, 9999))
        if generator == GeneratorType.TIMESTAMP:
            return str(time.time_ns() // 1_000_000)
        if generator == GeneratorType.COUNTER:
            return str(self.next_counter())
        if generator == GeneratorType.UUID:
            return str(uuid.uuid4())
        if generator == GeneratorType.FIXED:
            if spec.fixed_value is None:
                raise ConfigError(f"Field '{spec.name}' uses the 'fixed' generator but has no value")
            return spec.fixed_value
        raise ConfigError(f"Unknown generator '{generator}' for field '{spec.name}'")

    def generate_cycle_fields(self, specs: Iterable[FieldSpec]) -> GeneratedFields:
        """Generate every declared field exactly once, split by injection target."""
        header_fields: Dict[str, str] = {}
        body_fields: Dict[str, str] = {}
        for spec in specs:
            value = self.generate(spec)
            if spec.field_type == 'body':
                body_fields[spec.name] = value
            else:
                header_fields[spec.name] = value
        return GeneratedFields(header_fields, body_fields)


# Process-wide generator: one counter per process, starting from zero.
default_generator = FieldGenerator()


_placeholder_regex = re.compile(r"\{\{\s*([\w\-\.]+)\s*\}\}")


def render_body(body: Optional[str], body_fields: Dict[str, str]) -> Optional[str]:
    """
    Substitute {{name}} placeholders in body with generated values.
    Placeholders without a value are left untouched. With no base body, the
    fields themselves become a JSON object body.
    """
    if not body_fields:
        return body
    if body is None:
        return json.dumps(body_fields)

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in body_fields:
            return body_fields[name]
        logger.debug(f"No value for body placeholder '{{{{{name}}}}}'; leaving it unchanged.")
        return match.group(0)

    return _placeholder_regex.sub(_replace, body)
