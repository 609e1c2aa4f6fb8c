import docx
import io
from engine.state import AssessmentConfig, Result
from engine.timer import format_remaining

def generate_result_docx(result: Result, assessment: AssessmentConfig) -> io.BytesIO:
    """Generates a .docx review report from a scored result."""
    doc = docx.Document()
    doc.add_heading(assessment.title or "Assessment Result", 0)

    summary = doc.add_paragraph()
    summary.add_run(f"Candidate: {result.user_id}\n")
    summary.add_run(f"Score: {result.score}/{result.total_points} ({result.percentage}%)\n")
    verdict = summary.add_run("PASSED" if result.passed else "FAILED")
    verdict.bold = True
    summary.add_run(f" (threshold {assessment.pass_threshold}%)\n")
    summary.add_run(f"Time taken: {format_remaining(result.time_taken_seconds)}\n")
    summary.add_run(f"Completed at: {result.completed_at:%Y-%m-%d %H:%M:%S} UTC")

    doc.add_heading("Answers", level=1)
    questions = {q.id: q for q in assessment.questions}
    for outcome in result.breakdown:
        question = questions.get(outcome.question_id)
        para = doc.add_paragraph(style='List Number')
        para.add_run(question.text if question else outcome.question_id).bold = True

        answer = outcome.answer.value if outcome.answer else "(no answer)"
        if outcome.pending_manual_review:
            mark = "?"
        else:
            mark = "+" if outcome.is_correct else "-"
        doc.add_paragraph(f"{mark} {answer}")
        doc.add_paragraph(
            f"{outcome.points_earned}/{outcome.max_points} points"
            + (" - pending manual review" if outcome.pending_manual_review else ""),
            style='Caption',
        )

    doc.add_heading("Integrity", level=1)
    integrity = result.integrity
    doc.add_paragraph(f"Tab switches: {integrity.tab_switch_count}")
    doc.add_paragraph(f"Clipboard violations: {integrity.clipboard_violation_count}")
    if integrity.knockout:
        doc.add_paragraph().add_run("Tab switch limit reached").bold = True
    for violation in integrity.violations:
        doc.add_paragraph(violation, style='List Bullet')

    buffer = io.BytesIO()
    doc.save(buffer)
    buffer.seek(0)
    return buffer
