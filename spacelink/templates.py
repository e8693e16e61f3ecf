"""Template for the default configuration file."""

CONFIG_TEMPLATE = """\
# spacelink configuration
# Values can reference environment variables: ${oc.env:VAR_NAME}

# SSH host alias of the SageMaker space entry in ~/.ssh/config
host_alias: sagemaker

# Editor running the AWS Toolkit: cursor or code
editor: cursor

# Space ARN used by `spacelink setup` and `spacelink quickstart`
# space_arn: arn:aws:sagemaker:us-east-1:123456789012:space/d-abc123/my-space

# Region for the AWS credentials check
region: us-east-1

# Toolkit storage directory, derived from the editor when unset
# storage_dir: ~/.config/Cursor/User/globalStorage/amazonwebservices.aws-toolkit-vscode

ssh_config_path: ~/.ssh/config
known_hosts_path: ~/.ssh/known_hosts

# Editor extension directory, ~/.cursor/extensions or ~/.vscode/extensions when unset
# extensions_dir: ~/.cursor/extensions

# Connection monitor: seconds between checks and checks before giving up
monitor_interval: 5
monitor_max_checks: 60

# Timeout in seconds for commands run on the space over SSH
remote_timeout: 10

# Command that starts the local server, if you have one, and seconds to wait after it
# server_start_command: cursor --command aws.sagemaker.openRemoteConnection
server_start_wait: 5
"""
