"""Tests for pipeline validation and loading."""

import pytest

from conftest import SAMPLES_DIR, notify, pipeline, sh
from conveyor.exceptions import ConfigurationError
from conveyor.runner import load_pipeline, validate_pipeline


class TestValidatePipeline:
    def test_empty_stage_list(self):
        with pytest.raises(ConfigurationError, match='no stages'):
            validate_pipeline(pipeline(stages=[]))

    def test_duplicate_stage_names(self):
        definition = pipeline(
            stages=[
                {'name': 'Build', 'steps': [sh('a')]},
                {'name': 'Build', 'steps': [sh('b')]},
            ]
        )
        with pytest.raises(ConfigurationError, match="Duplicate stage name 'Build'"):
            validate_pipeline(definition)

    @pytest.mark.asyncio
    async def test_duplicate_names_run_nothing(self, runner, collaborators, main_context):
        definition = pipeline(
            stages=[
                {'name': 'Build', 'steps': [sh('a')]},
                {'name': 'Build', 'steps': [sh('b')]},
            ]
        )
        with pytest.raises(ConfigurationError):
            await runner.execute(definition, main_context)
        assert collaborators.commands.calls == []

    def test_undeclared_credentials(self):
        definition = pipeline(
            stages=[
                {
                    'name': 'Scan',
                    'steps': [
                        {
                            'kind': 'with_credentials',
                            'bindings': [
                                {'credentials_id': 'trivy-token', 'variable': 'TOKEN'}
                            ],
                            'steps': [sh('trivy')],
                        }
                    ],
                }
            ]
        )
        with pytest.raises(ConfigurationError, match="'trivy-token' are not declared"):
            validate_pipeline(definition)

    def test_binding_must_match_kind(self):
        definition = pipeline(
            credentials={'docker': 'username_password'},
            stages=[
                {
                    'name': 'Push',
                    'credentials': [{'credentials_id': 'docker', 'variable': 'DOCKER'}],
                    'steps': [sh('docker push')],
                }
            ],
        )
        with pytest.raises(ConfigurationError, match='does not match its kind'):
            validate_pipeline(definition)

    def test_unknown_variable_in_message(self):
        definition = pipeline(
            stages=[{'name': 'Build', 'steps': [notify('Built ${ARTIFACT}')]}]
        )
        with pytest.raises(ConfigurationError, match="'ARTIFACT' is never set"):
            validate_pipeline(definition)

    def test_variables_from_earlier_steps_are_known(self):
        definition = pipeline(
            environment={'PROJECT': 'demo'},
            stages=[
                {'name': 'Checkout', 'steps': [{'kind': 'checkout', 'tag_var': 'TAG'}]},
                {'name': 'Version', 'steps': [sh('cat VERSION', output_var='VERSION')]},
                {
                    'name': 'Announce',
                    'steps': [notify('${PROJECT} ${VERSION} (${TAG}, ${GIT_COMMIT})')],
                },
            ],
            post={'always': [notify('#${BUILD_NUMBER} ${RUN_STATUS}')]},
        )
        validate_pipeline(definition)

    def test_credential_variables_do_not_leak_out_of_scope(self):
        definition = pipeline(
            credentials={'token': 'string'},
            stages=[
                {
                    'name': 'Scan',
                    'credentials': [{'credentials_id': 'token', 'variable': 'TOKEN'}],
                    'steps': [notify('using ${TOKEN}')],
                },
                {'name': 'Later', 'steps': [notify('still ${TOKEN}')]},
            ],
        )
        with pytest.raises(ConfigurationError) as e:
            validate_pipeline(definition)
        assert "Stage 'Later'" in str(e.value)
        assert "Stage 'Scan'" not in str(e.value)

    def test_stage_hooks_cannot_use_stage_credentials(self):
        definition = pipeline(
            credentials={'token': 'string'},
            stages=[
                {
                    'name': 'Scan',
                    'credentials': [{'credentials_id': 'token', 'variable': 'TOK'}],
                    'steps': [sh('scan --token "$TOK"')],
                    'post': {
                        'always': [
                            {
                                'kind': 'publish',
                                'path': 'r-${TOK}.xml',
                                'report_kind': 'junit',
                            }
                        ]
                    },
                }
            ],
        )
        with pytest.raises(ConfigurationError, match="'TOK' is never set") as e:
            validate_pipeline(definition)
        assert "Stage 'Scan' post.always" in str(e.value)

    def test_run_status_only_known_to_pipeline_hooks(self):
        definition = pipeline(
            stages=[{'name': 'Build', 'steps': [notify('${RUN_STATUS}')]}]
        )
        with pytest.raises(ConfigurationError):
            validate_pipeline(definition)

    def test_reports_every_problem(self):
        definition = pipeline(
            stages=[
                {'name': 'A', 'steps': [notify('${X}')]},
                {'name': 'A', 'steps': [notify('${Y}')]},
            ]
        )
        with pytest.raises(ConfigurationError) as e:
            validate_pipeline(definition)
        message = str(e.value)
        assert 'Duplicate' in message and "'X'" in message and "'Y'" in message


class TestLoadPipeline:
    def test_sample_pipeline_is_valid(self):
        definition = load_pipeline(SAMPLES_DIR / 'end-to-end.yml')
        validate_pipeline(definition)
        assert definition.name == 'project-name'
        assert [s.name for s in definition.stages][:3] == [
            'Checkout',
            'Build',
            'Unit Tests',
        ]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='not found'):
            load_pipeline(tmp_path / 'pipeline.yml')

    def test_malformed_yaml(self, tmp_path):
        file = tmp_path / 'pipeline.yml'
        file.write_text('stages: [\n')
        with pytest.raises(ConfigurationError):
            load_pipeline(file)

    def test_unknown_step_kind(self, tmp_path):
        file = tmp_path / 'pipeline.yml'
        file.write_text('stages:\n  - name: A\n    steps:\n      - kind: docker\n')
        with pytest.raises(ConfigurationError):
            load_pipeline(file)

    def test_stages_as_mapping_keep_order(self, tmp_path):
        file = tmp_path / 'pipeline.yml'
        file.write_text(
            'stages:\n'
            '  Build:\n'
            '    steps: [{kind: sh, script: make}]\n'
            '  Test:\n'
            '    steps: [{kind: sh, script: make test}]\n'
        )
        definition = load_pipeline(file)
        assert [s.name for s in definition.stages] == ['Build', 'Test']
