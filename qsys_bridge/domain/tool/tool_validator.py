from typing import Any, Dict
from pydantic import BaseModel, ValidationError

from qsys_bridge.domain.errors import InvalidArgumentError


# Parameter validation
class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(tool: Dict[str, Any], parameters: Dict[str, Any]) -> BaseModel:
        """Validate raw tool arguments against the tool's argument model"""

        if not isinstance(parameters, dict):
            raise InvalidArgumentError(f"Arguments for {tool['id']} must be an object")

        try:
            return tool["arguments"].model_validate(parameters)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
                for error in e.errors()
            ]
            raise InvalidArgumentError(
                f"Invalid arguments for {tool['id']}: {'; '.join(problems)}",
                details={"problems": problems}
            )
