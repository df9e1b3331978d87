import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_lambda_event_sources as lambda_event_sources,
    aws_s3 as s3,
    aws_s3_notifications as s3n,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subs,
    aws_sqs as sqs,
)
from constructs import Construct


class TodoListStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        bucket_auto_delete_objects = data_retention_mode == "destroy"
        schema_version = "2026-10-01"
        owner_index_name = "ownerEmail-index"

        tasks_table = ddb.Table(
            self,
            "TodoTasks",
            partition_key=ddb.Attribute(name="pk", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="sk", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        tasks_table.add_global_secondary_index(
            index_name=owner_index_name,
            partition_key=ddb.Attribute(name="email", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="createdAt", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        import_bucket = s3.Bucket(
            self,
            "TodoTasksImportBucket",
            removal_policy=stateful_removal_policy,
            auto_delete_objects=bucket_auto_delete_objects,
            enforce_ssl=True,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        )

        events_topic = sns.Topic(
            self,
            "TodoTaskEventsTopic",
            display_name=f"{construct_id}-{stage_name}-task-events",
        )

        notify_dlq = sqs.Queue(
            self,
            "TodoTaskEventsDlq",
            retention_period=Duration.days(14),
            removal_policy=stateful_removal_policy,
        )
        notify_queue = sqs.Queue(
            self,
            "TodoTaskEventsQueue",
            visibility_timeout=Duration.seconds(60),
            dead_letter_queue=sqs.DeadLetterQueue(max_receive_count=3, queue=notify_dlq),
            removal_policy=stateful_removal_policy,
        )
        events_topic.add_subscription(sns_subs.SqsSubscription(notify_queue))

        user_pool = cognito.UserPool(
            self,
            "TodoUserPool",
            self_sign_up_enabled=False,
            sign_in_aliases=cognito.SignInAliases(username=True, email=True),
            standard_attributes=cognito.StandardAttributes(
                email=cognito.StandardAttribute(required=True, mutable=True),
            ),
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "TodoUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
        )

        handler_env = {
            "TODO_TASKS_TABLE": tasks_table.table_name,
            "TODO_TASKS_OWNER_INDEX": owner_index_name,
            "TODO_EVENTS_TOPIC_ARN": events_topic.topic_arn,
            "TODO_SCHEMA_VERSION": schema_version,
        }

        task_fn = _lambda.Function(
            self,
            "TodoTaskHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="task_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(10),
            environment=handler_env,
        )
        tasks_table.grant_read_write_data(task_fn)
        events_topic.grant_publish(task_fn)
        task_fn.add_to_role_policy(
            iam.PolicyStatement(
                actions=["cognito-idp:AdminGetUser"],
                resources=[user_pool.user_pool_arn],
            )
        )

        batch_fn = _lambda.Function(
            self,
            "TodoBatchTaskHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="batch_task_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(30),
            environment=handler_env,
        )
        tasks_table.grant_write_data(batch_fn)
        events_topic.grant_publish(batch_fn)
        import_bucket.grant_read(batch_fn)
        import_bucket.add_event_notification(
            s3.EventType.OBJECT_CREATED,
            s3n.LambdaDestination(batch_fn),
        )

        notify_fn = _lambda.Function(
            self,
            "TodoNotifyEventHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="notify_event_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(10),
            environment={"TODO_SCHEMA_VERSION": schema_version},
        )
        notify_fn.add_event_source(
            lambda_event_sources.SqsEventSource(
                notify_queue,
                batch_size=10,
                report_batch_item_failures=True,
            )
        )

        rest_api = apigw.RestApi(
            self,
            "TodoListApi",
            rest_api_name=f"{construct_id}-{stage_name}-todo-list",
            deploy_options=apigw.StageOptions(stage_name=stage_name),
        )
        tasks_authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "TodoTasksCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )
        task_integration = apigw.LambdaIntegration(task_fn)

        tasks = rest_api.root.add_resource("tasks")
        task_by_email = tasks.add_resource("{email}")
        task_item = task_by_email.add_resource("{id}")

        for resource, method in (
            (tasks, "GET"),
            (tasks, "POST"),
            (task_item, "PUT"),
            (task_item, "DELETE"),
        ):
            resource.add_method(
                method,
                task_integration,
                authorization_type=apigw.AuthorizationType.COGNITO,
                authorizer=tasks_authorizer,
            )

        CfnOutput(self, "TodoTasksTableName", value=tasks_table.table_name)
        CfnOutput(self, "TodoTasksImportBucketName", value=import_bucket.bucket_name)
        CfnOutput(self, "TodoTaskEventsTopicArn", value=events_topic.topic_arn)
        CfnOutput(self, "TodoUserPoolId", value=user_pool.user_pool_id)
        CfnOutput(self, "TodoUserPoolClientId", value=user_pool_client.user_pool_client_id)
        CfnOutput(self, "TodoListApiUrl", value=rest_api.url)
