REDACTED = '****'
SHORT_REVISION_LENGTH = 7

RESULT_FILE = 'result.json'
WORKSPACE_DIR = 'workspace'
ARTIFACTS_DIR = 'artifacts'

# Variables every run context is seeded with by the invocation layer
TRIGGER_VARIABLES = (
    'BRANCH_NAME',
    'CHANGE_ID',
    'BUILD_NUMBER',
    'BUILD_URL',
    'RUN_ID',
)
# Set right before pipeline-level post hooks run
RUN_STATUS_VARIABLE = 'RUN_STATUS'
