from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel

from taskmaster.errors import OracleError
from taskmaster.llm_openai import Usage
from taskmaster.llm_router import LLMRouter

logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=BaseModel)


class Oracle(Protocol):
    def call_json(
        self,
        *,
        system: str,
        user: str,
        schema: type[TModel],
        images: Sequence[str] = (),
    ) -> tuple[TModel, Usage, str]: ...


@dataclass(frozen=True)
class RouterOracle:
    """Decode-and-validate boundary around the provider router.

    Anything other than a response that validates against `schema` (transport
    errors, refusals, non-JSON text, schema mismatches) is raised as OracleError.
    """

    router: LLMRouter
    model_ref: str
    max_output_tokens: int = 1500

    def call_json(
        self,
        *,
        system: str,
        user: str,
        schema: type[TModel],
        images: Sequence[str] = (),
    ) -> tuple[TModel, Usage, str]:
        try:
            resp, usage, raw = self.router.call_json(
                model_ref=self.model_ref,
                system=system,
                user=user,
                schema=schema,
                images=images,
                max_output_tokens=self.max_output_tokens,
            )
        except Exception as e:
            logger.warning("oracle call failed (%s, %s): %s", self.model_ref, schema.__name__, e)
            raise OracleError(f"{schema.__name__}: {e}") from e
        if not isinstance(resp, schema):
            raise OracleError(f"{schema.__name__}: oracle returned {type(resp).__name__}")
        return resp, usage, raw
