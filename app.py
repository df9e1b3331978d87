#!/usr/bin/env python3
import os

import aws_cdk as cdk

from stacks.todo_list_stack import TodoListStack

app = cdk.App()

stack_name = os.getenv("CDK_STACK_NAME", "TodoListStack")

TodoListStack(
    app,
    stack_name,
    env=cdk.Environment(
        account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=os.getenv("CDK_DEFAULT_REGION", "us-east-1"),
    ),
    tags={
        "cost": "todo-list",
        "team": "tasks",
    },
)

app.synth()
