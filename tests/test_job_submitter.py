import re

import pytest

from inference_manager.core.exceptions import RemoteConnectionError, SubmissionError
from inference_manager.schemas.job import JobResources
from inference_manager.services.job_kinds import JOB_KINDS, JobKind, get_job_kind
from inference_manager.services.job_submitter import JobSubmitter, parse_job_id

from fakes import failed, ok

LLM = JOB_KINDS["llm"]
NOTEBOOK = JOB_KINDS["notebook"]


@pytest.fixture
def submitter(executor):
    return JobSubmitter(executor)


def test_parse_job_id():
    assert parse_job_id("Submitted batch job 123456\n") == "123456"
    assert parse_job_id("sbatch: warning: low priority\nSubmitted batch job 7") == "7"
    assert parse_job_id("") is None
    assert parse_job_id("sbatch: error: invalid partition") is None


async def test_submit_cancels_previous_job_then_submits(submitter, executor, credentials):
    executor.on(r"^scancel", ok()).on(r"\nsbatch ", ok("Submitted batch job 123456\n"))

    result = await submitter.submit(credentials, LLM)

    assert result.success
    assert result.job_id == "123456"
    assert executor.commands[0] == "scancel -n rag_app -u alice"
    assert executor.commands[1].startswith("cat << 'ENDOFSCRIPT' > ./llm_job_")
    assert len(executor.commands) == 2


async def test_script_is_removed_after_submission(submitter, executor, credentials):
    executor.on(r"\nsbatch ", ok("Submitted batch job 1\n"))

    result = await submitter.submit(credentials, NOTEBOOK)

    command = executor.commands[-1]
    path = result.script_path
    assert path.startswith("./notebook_job_") and path.endswith(".slurm")
    assert f"sbatch {path}\nrc=$?\nrm -f {path}\nexit $rc" in command


async def test_sbatch_rejection(submitter, executor, credentials):
    executor.on(
        r"\nsbatch ",
        failed("sbatch: error: Batch job submission failed: Invalid partition name specified"),
    )

    result = await submitter.submit(credentials, LLM)

    assert not result.success
    assert result.error_type == "submission_error"
    assert "Invalid partition" in result.error


async def test_unparseable_acknowledgement(submitter, executor, credentials):
    executor.on(r"\nsbatch ", ok("something unexpected\n"))

    result = await submitter.submit(credentials, LLM)

    assert not result.success
    assert "Could not parse job id" in result.error


async def test_connection_failure_is_reported(submitter, executor, credentials):
    executor.on(r".", RemoteConnectionError("SSH connection failed: host unreachable"))

    result = await submitter.submit(credentials, LLM)

    assert not result.success
    assert result.error_type == "connection_error"


async def test_rejected_model_never_reaches_the_cluster(submitter, executor, credentials):
    result = await submitter.submit(credentials, NOTEBOOK, model_id="someone/else")

    assert not result.success
    assert result.error == "Invalid model selection"
    assert executor.commands == []


async def test_model_selection_only_for_selectable_kinds(submitter, executor, credentials):
    result = await submitter.submit(
        credentials, LLM, model_id="mistralai/Mistral-7B-Instruct-v0.2"
    )

    assert not result.success
    assert "does not accept a model selection" in result.error


async def test_failed_scancel_does_not_block_submission(submitter, executor, credentials):
    executor.on(r"^scancel", failed("scancel: error: Invalid user")).on(
        r"\nsbatch ", ok("Submitted batch job 42\n")
    )

    result = await submitter.submit(credentials, LLM)

    assert result.job_id == "42"


async def test_cancel_named_job_reports_failure(submitter, executor, credentials):
    executor.on(r"^scancel", failed())

    assert await submitter.cancel_named_job(credentials, "rag_app") is False


def test_render_llm_script(submitter):
    script = submitter.render_script(LLM, JobResources())

    assert script.startswith("#!/bin/bash\n")
    assert "#SBATCH --job-name=rag_app" in script
    assert "#SBATCH --gres=gpu:1" in script
    assert "#SBATCH --partition=kamiak" in script
    assert "module load cuda/12.2.0" in script
    assert 'export HF_MODEL_ID="meta-llama/Meta-Llama-3-8B-Instruct"' in script
    assert script.rstrip().endswith("python app.py --host 0.0.0.0 --port 5000")
    assert 'if [ ! -f "app.py" ]; then' in script
    assert re.search(r"(?<!\$)\{[a-z_]+\}", script) is None


def test_render_notebook_script_with_model(submitter):
    script = submitter.render_script(
        NOTEBOOK, JobResources(num_gpus=0, memory="64g"), "google/gemma-3-1b-it"
    )

    assert "#SBATCH --job-name=notebook_llm" in script
    assert "#SBATCH --mem=64G" in script
    assert "--gres" not in script
    assert "python-docx" in script
    assert 'export HF_MODEL_ID="google/gemma-3-1b-it"' in script
    assert "--port 5001" in script


def test_render_writes_server_source(submitter, tmp_path):
    source = tmp_path / "app.py"
    source.write_text("print('serving')\n")
    kind = JobKind(
        name="custom", job_name="custom_app", port=5005, server_file="app.py",
        server_source=str(source),
    )

    script = submitter.render_script(kind, JobResources())

    assert "cat << 'APPEOF' > app.py\nprint('serving')\nAPPEOF" in script


def test_fill_template_keeps_shell_variables(submitter):
    filled = submitter.fill_template('echo "${HOME}" $VENV_DIR {name}', {"name": "job"})

    assert filled == 'echo "${HOME}" $VENV_DIR job'


def test_fill_template_is_single_pass(submitter):
    filled = submitter.fill_template("{a} {b}", {"a": "{b}", "b": "x"})

    assert filled == "{b} x"


def test_fill_template_reports_missing_placeholders(submitter):
    with pytest.raises(SubmissionError, match="port"):
        submitter.fill_template("--port {port} --name {name}", {"name": "x"})


def test_missing_template(executor, tmp_path):
    submitter = JobSubmitter(executor, template_dir=str(tmp_path))

    with pytest.raises(SubmissionError, match="not found"):
        submitter.read_template()


def test_submit_command_rejects_delimiter_in_script(submitter):
    with pytest.raises(SubmissionError):
        submitter.build_submit_command("#!/bin/bash\nENDOFSCRIPT\n", "./job.slurm")


def test_submit_command_quotes_heredoc(submitter):
    command = submitter.build_submit_command("#!/bin/bash\necho $HOME", "./job.slurm")

    assert command == (
        "cat << 'ENDOFSCRIPT' > ./job.slurm\n"
        "#!/bin/bash\necho $HOME\n"
        "ENDOFSCRIPT\n"
        "sbatch ./job.slurm\n"
        "rc=$?\n"
        "rm -f ./job.slurm\n"
        "exit $rc\n"
    )


def test_job_kinds():
    assert get_job_kind("llm").port == 5000
    assert get_job_kind("notebook").job_name == "notebook_llm"
    with pytest.raises(KeyError):
        get_job_kind("jupyter")
    assert NOTEBOOK.resolve_model(None) == NOTEBOOK.default_model


def test_preview_does_not_touch_the_cluster(submitter, executor):
    preview = submitter.preview(NOTEBOOK)

    assert preview.kind == "notebook"
    assert preview.job_name == "notebook_llm"
    assert "NotebookLLM.py --host 0.0.0.0 --port 5001" in preview.script
    assert executor.commands == []
