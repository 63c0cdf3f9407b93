import os
import sys
from pathlib import Path
from typing import List, Union

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["AUTOCRISP_COMPLETION_MODE"] = "off"
os.environ["AUTOCRISP_COMPLETION_API_KEY"] = ""
os.environ["AUTOCRISP_AGENT_STEP_DELAY_SECONDS"] = "0"
os.environ["AUTOCRISP_MAX_ITERATIONS"] = "20"
os.environ["AUTOCRISP_MAX_CONCURRENT_TASKS"] = "3"
os.environ["AUTOCRISP_EXPOSE_ERRORS"] = "true"


from completion_client import CompletionClient  # noqa: E402
from models import CompletionRequest  # noqa: E402


class ScriptedCompletionClient(CompletionClient):
    """
    Completion client that replays canned responses in order.

    A response that is an exception instance is raised instead of returned.
    Once the script runs out every call raises the last exception or
    returns the last text.
    """

    def __init__(self, responses: List[Union[str, Exception]]) -> None:
        super().__init__(mode="http", base_url="http://completion.test/v1", api_key="test-key")
        self.responses = list(responses)
        self.requests: List[CompletionRequest] = []

    def complete(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if len(self.responses) > 1:
            response = self.responses.pop(0)
        else:
            response = self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def scripted_client():
    return ScriptedCompletionClient


@pytest.fixture
def offline_client():
    return CompletionClient(mode="off")
