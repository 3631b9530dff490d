"""Tests for the Bedrock runtime and batch client wrappers."""

import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from chatloom.models.core import JobState
from chatloom.utils.bedrock_batch import (BedrockBatch, BedrockBatchError, build_record, extract_record_output,
                                          map_status, to_native_messages)
from chatloom.utils.bedrock_llm import CACHE_POINT, BedrockLLM, BedrockLLMError, merge_consecutive_roles

from fakes import bedrock_batch_config, bedrock_llm_config


def client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'Converse')


def converse_reply(content):
    return {'output': {'message': {'role': 'assistant', 'content': content}}, 'stopReason': 'end_turn', 'usage': {}}


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(time, 'sleep', lambda seconds: None)


class TestMergeConsecutiveRoles:

    def test_merges_neighbours_and_drops_empty(self):
        merged = merge_consecutive_roles([
            {'role': 'user', 'content': [{'text': 'a'}]},
            {'role': 'user', 'content': [{'text': 'b'}]},
            {'role': 'assistant', 'content': []},
            {'role': 'assistant', 'content': [{'text': 'c'}]},
        ])
        assert merged == [
            {'role': 'user', 'content': [{'text': 'a'}, {'text': 'b'}]},
            {'role': 'assistant', 'content': [{'text': 'c'}]},
        ]

    def test_starts_with_user(self):
        merged = merge_consecutive_roles([{'role': 'assistant', 'content': [{'text': 'c'}]}])
        assert [m['role'] for m in merged] == ['user', 'assistant']


class TestBedrockLLM:

    def test_retries_transient_errors(self, no_sleep):
        client = MagicMock()
        client.converse.side_effect = [client_error('ThrottlingException'), converse_reply([{'text': 'hi'}])]

        response = BedrockLLM(bedrock_llm_config(), client=client).converse('regular', [{'role': 'user', 'content': [{'text': 'x'}]}],
                                                                    'system')

        assert response.text == 'hi'
        assert client.converse.call_count == 2

    def test_client_errors_fail_fast(self, no_sleep):
        client = MagicMock()
        client.converse.side_effect = client_error('ValidationException')

        with pytest.raises(BedrockLLMError):
            BedrockLLM(bedrock_llm_config(), client=client).converse('regular', [], 'system')
        assert client.converse.call_count == 1

    def test_gives_up_after_attempts(self, no_sleep):
        client = MagicMock()
        client.converse.side_effect = client_error('ServiceUnavailableException')

        with pytest.raises(BedrockLLMError):
            BedrockLLM(bedrock_llm_config(), client=client).converse('regular', [], 'system')
        assert client.converse.call_count == 3

    def test_no_retry_past_deadline(self):
        client = MagicMock()
        client.converse.side_effect = client_error('ThrottlingException')

        with pytest.raises(BedrockLLMError):
            BedrockLLM(bedrock_llm_config(retry_delay=5.0), client=client).converse('regular', [], 'system',
                                                                           deadline=time.monotonic() + 0.1)
        assert client.converse.call_count == 1

    def test_cache_points_follow_prefix(self):
        client = MagicMock()
        client.converse.return_value = converse_reply([{'text': 'ok'}])
        prefix = [{'role': 'user', 'content': [{'text': 'history'}]}]

        BedrockLLM(bedrock_llm_config(), client=client).converse('regular', [{'role': 'user', 'content': [{'text': 'now'}]}],
                                                         'system',
                                                         cached_messages=prefix)

        request = client.converse.call_args.kwargs
        assert request['system'] == [{'text': 'system'}, CACHE_POINT]
        assert request['messages'] == [{'role': 'user', 'content': [{'text': 'history'}, CACHE_POINT, {'text': 'now'}]}]
        assert prefix == [{'role': 'user', 'content': [{'text': 'history'}]}]

    def test_structured_output_forces_tool(self):
        client = MagicMock()
        client.converse.return_value = converse_reply([{
            'toolUse': {
                'toolUseId': '1',
                'name': 'classify',
                'input': {
                    'label': 'a'
                }
            }
        }])

        result = BedrockLLM(bedrock_llm_config(), client=client).generate_structured('low', [], 'system', {'type': 'object'},
                                                                             'classify', 'Classify.')

        assert result == {'label': 'a'}
        assert client.converse.call_args.kwargs['toolConfig']['toolChoice'] == {'tool': {'name': 'classify'}}

    def test_structured_output_accepts_fenced_json(self):
        client = MagicMock()
        client.converse.return_value = converse_reply([{'text': '```json\n{"label": "b"}\n```'}])

        result = BedrockLLM(bedrock_llm_config(), client=client).generate_structured('low', [], 'system', {'type': 'object'},
                                                                             'classify', 'Classify.')
        assert result == {'label': 'b'}

    def test_unknown_tier(self):
        with pytest.raises(BedrockLLMError):
            BedrockLLM(bedrock_llm_config(), client=MagicMock()).model_for('premium')


class TestBedrockBatch:

    @pytest.mark.parametrize('status, state', [
        ('Submitted', JobState.SUBMITTED),
        ('Scheduled', JobState.QUEUED),
        ('InProgress', JobState.RUNNING),
        ('Completed', JobState.SUCCEEDED),
        ('PartiallyCompleted', JobState.FAILED),
        ('Stopped', JobState.CANCELLED),
        ('Expired', JobState.EXPIRED),
        ('SomethingNew', JobState.FAILED),
    ])
    def test_status_mapping(self, status, state):
        assert map_status(status) == state

    def test_submit_and_get(self):
        client = MagicMock()
        client.create_model_invocation_job.return_value = {'jobArn': 'arn:job/7'}
        client.get_model_invocation_job.return_value = {'status': 'InProgress', 'jobName': 'chatloom-chat1-batch1-0'}
        batch = BedrockBatch(bedrock_batch_config(), client=client)

        info = batch.submit('s3://bucket/in.jsonl', 's3://bucket/out/', 'chatloom-chat1-batch1-0')
        assert info.provider_name == 'arn:job/7'
        assert info.state == JobState.SUBMITTED
        kwargs = client.create_model_invocation_job.call_args.kwargs
        assert kwargs['inputDataConfig']['s3InputDataConfig']['s3Uri'] == 's3://bucket/in.jsonl'

        assert batch.get('arn:job/7').state == JobState.RUNNING

    def test_submit_requires_role(self):
        batch = BedrockBatch(bedrock_batch_config(role_arn=''), client=MagicMock())
        with pytest.raises(BedrockBatchError):
            batch.submit('s3://bucket/in.jsonl', 's3://bucket/out/', 'job')

    def test_stop_tolerates_finished_jobs(self):
        client = MagicMock()
        client.stop_model_invocation_job.side_effect = client_error('ValidationException')

        BedrockBatch(bedrock_batch_config(), client=client).stop('arn:job/7')

    def test_record_round_trip(self):
        record = build_record('1-2', 'system', [
            {'role': 'user', 'content': [{'text': 'a'}]},
            {'role': 'user', 'content': [{'text': 'b'}]},
        ], 'record', 'Record.', {'type': 'object'})

        assert record['modelInput']['messages'] == [{'role': 'user', 'content': [{'type': 'text', 'text': 'a'},
                                                                                 {'type': 'text', 'text': 'b'}]}]
        output = {'recordId': '1-2', 'modelOutput': {'content': [{'type': 'tool_use', 'name': 'record',
                                                                 'input': {'conversations': []}}]}}
        assert extract_record_output(output, 'record') == {'conversations': []}

    def test_failed_record(self):
        with pytest.raises(BedrockBatchError):
            extract_record_output({'recordId': '1', 'error': {'errorCode': 400}}, 'record')
        with pytest.raises(BedrockBatchError):
            extract_record_output({'recordId': '1', 'modelOutput': {'content': [{'type': 'text', 'text': 'no'}]}},
                                  'record')

    def test_native_messages_skip_empty(self):
        assert to_native_messages([{'role': 'user', 'content': [{'text': ''}]}]) == []
