#!/usr/bin/env python3
"""
Development server startup script for LMS UI
Resolves Cognito and API settings from the deployed LMS stack
"""
import os
import sys

import boto3
import uvicorn
from botocore.exceptions import ClientError, NoCredentialsError

# Add the current directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

ENV_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env")

# CloudFormation output key -> environment variable
STACK_OUTPUTS = {
    'UserPoolId': 'COGNITO_USER_POOL_ID',
    'UserPoolClientId': 'COGNITO_CLIENT_ID',
    'ApiBaseUrl': 'API_BASE_URL',
    'ApiUrl': 'API_BASE_URL',
}


def load_aws_config():
    """Fill missing settings from the LMS CloudFormation stack"""
    if os.getenv("AUTH_PROVIDER", "cognito").lower() == "dev":
        print("🔧 Development identity provider selected, skipping AWS lookup")
        print()
        return

    print("🔧 Loading AWS configuration...")
    region = os.getenv("COGNITO_REGION", os.getenv("AWS_REGION", "ap-southeast-1"))

    try:
        _load_from_cloudformation(region)
    except NoCredentialsError:
        print("   ⚠️  AWS credentials not configured. Run 'aws configure'")
    except ClientError as e:
        print(f"   ⚠️  AWS configuration error: {e.response['Error']['Code']}")

    print()


def _load_from_cloudformation(region: str):
    """Copy stack outputs into environment variables that are not already set"""
    stack_name = os.getenv("LMS_STACK_NAME", "LMS-CoreStack")

    try:
        cf_client = boto3.client('cloudformation', region_name=region)
        response = cf_client.describe_stacks(StackName=stack_name)
    except ClientError as e:
        if e.response['Error']['Code'] == 'ValidationError':
            print(f"   ⚠️  CloudFormation stack '{stack_name}' not found")
            return
        raise

    stack = response['Stacks'][0]
    outputs = {output['OutputKey']: output['OutputValue'] for output in stack.get('Outputs', [])}

    configured = []
    for cf_key, env_var in STACK_OUTPUTS.items():
        if cf_key in outputs and not os.getenv(env_var):
            os.environ[env_var] = outputs[cf_key]
            configured.append(env_var)

    if configured:
        print(f"   ✅ Loaded {', '.join(configured)} from CloudFormation stack: {stack_name}")
    else:
        print(f"   ⚠️  No new configuration found in CloudFormation stack: {stack_name}")


def load_env_file(path: str = ENV_FILE) -> int:
    """Copy KEY=VALUE lines from a .env file into the environment without overriding it"""
    if not os.path.exists(path):
        return 0

    loaded = 0
    with open(path, encoding="utf-8") as env_file:
        for raw in env_file:
            entry = raw.strip()
            if not entry or entry.startswith("#") or "=" not in entry:
                continue
            name, value = (part.strip() for part in entry.split("=", 1))
            if name not in os.environ:
                os.environ[name] = value.strip("\"'")
                loaded += 1
    print(f"📄 Loaded {loaded} settings from {os.path.basename(path)}")
    return loaded


def main():
    """Start the development server"""
    print("🚀 Starting LMS UI Development Server")
    print("=" * 50)

    load_env_file()
    load_aws_config()

    from lms_ui.utils.config import get_config

    try:
        config = get_config()
        config.validate_required_config()
    except ValueError as e:
        print(f"❌ Configuration Error: {e}")
        print("\n💡 Troubleshooting:")
        print("   1. Ensure AWS credentials are configured: aws configure")
        print("   2. Set LMS_STACK_NAME if using a different stack name")
        print("   3. Or run locally with AUTH_PROVIDER=dev and API_BASE_URL set")
        sys.exit(1)

    print("✅ Configuration validated successfully")
    print(f"Environment: {config.__class__.__name__}")
    print(f"Debug Mode: {config.DEBUG}")
    print(f"Identity Provider: {config.AUTH_PROVIDER}")
    print(f"AWS Region: {config.AWS_REGION}")
    print("Server: http://localhost:8000")
    print("Press Ctrl+C to stop the server")
    print("-" * 50)

    try:
        uvicorn.run(
            "lms_ui.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["lms_ui"],
            log_level="debug" if config.DEBUG else "info",
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n👋 Server stopped by user")


if __name__ == "__main__":
    main()
