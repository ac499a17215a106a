"""
Prompt builder for rubric and task grading.

Constructs prompts that enforce:
- Criterion-by-criterion evaluation on the 7-step grade scale
- Point-by-point task scoring against an answer key
- Short feedback and an exact echo of the student label
- Consistent JSON output
"""

from typing import NamedTuple, Optional

from rubric_grader.models import GRADE_SCALE, RubricTree, TaskScore, TaskSpec

_SCALE_TEXT = ", ".join(str(g) for g in GRADE_SCALE)


class PromptPair(NamedTuple):
    system_prompt: str
    user_prompt: str


class PromptBuilder:
    """
    Builds grading prompts for both grading modes.

    Rubric mode serializes every section and criterion (name, weight,
    description) and asks for one grade-scale score per criterion, in the
    order given. Task mode hands the model an answer key and a point
    conversion table and asks for points per task.
    """

    # Appended to every grading system prompt to bound output tokens.
    CONCISENESS_DIRECTIVE = """

CONCISENESS REQUIREMENTS (MUST FOLLOW):
- MAXIMUM 1 short sentence of feedback per criterion or task (5-10 words)
- Use only essential words: "Correct", "Missing X" or "Error: Y"
- Overall feedback: MAXIMUM 2 sentences
- No filler words or lengthy explanations
- COMPLETE ALL criteria and tasks; never stop early"""

    RUBRIC_SYSTEM_PROMPT = """You are an external examiner grading a written exam.

Grade the submission STRICTLY against the criteria you are given. Do not invent criteria.

For EACH criterion:
1. Give a score on the 7-step grade scale: {scale}
2. Give exactly ONE short, concrete feedback sentence

RULES:
- Use ONLY these scores: {scale}. No other numbers are allowed.
- Return the sections and criteria in EXACTLY the order and with EXACTLY the names given.
- Use EXACTLY this student label: "{student_label}". Never use names found in the submission.
- Always return COMPLETE and VALID JSON, with no text before or after it.

RETURN JSON with this structure:
{{
  "studentLabel": "{student_label}",
  "sections": [
    {{
      "name": "<section name>",
      "criteria": [
        {{
          "name": "<criterion name>",
          "score": 7,
          "feedback": "<one sentence>"
        }}
      ]
    }}
  ],
  "overallAssessment": "<short overall assessment, max 200 words>"
}}"""

    TASK_SYSTEM_PROMPT = """You are an experienced teacher marking a point-based exam.

Your job:
1. Analyse the student's answers
2. Award points EXACTLY according to the answer key
3. Give constructive feedback (MAX 1-2 sentences per task)
4. Compute totalPoints as the SUM of all awardedPoints
5. Convert the total to a grade using the conversion table

RULES:
- Use EXACTLY this student label: "{student_label}". Never use names found in the submission.
- Include maxPoints for every task, taken from the answer key
- Keep feedback SHORT and precise
- Always return COMPLETE and VALID JSON, with no text before or after it.

RETURN JSON with:
{{
  "studentLabel": "{student_label}",
  "tasks": [
    {{
      "number": "1a",
      "studentAnswer": "<what the student answered>",
      "correctAnswer": "<answer from the key>",
      "awardedPoints": 2,
      "maxPoints": 2,
      "feedback": "<short feedback>"
    }}
  ],
  "totalPoints": <sum of awardedPoints>,
  "grade": <grade from the conversion table>,
  "gradeRationale": "<max 100 words>",
  "overallFeedback": "<max 200 words>"
}}"""

    EXPLAIN_SYSTEM_PROMPT = (
        "You are a maths tutor. Explain SPECIFICALLY what is missing from the student's answer."
    )

    QUESTION_SYSTEM_PROMPT = """You are an experienced tutor.

The teacher has a specific question about a student's answer to task {number}.{image_note}

Your job:
1. Read the student's WHOLE document carefully, not only the extracted answer
2. Answer the teacher's question SPECIFICALLY
3. Refer to concrete content from the document{image_ref}
4. Pay attention to images, drawings or other content that may not have been captured"""

    def build(
        self,
        tree: Optional[RubricTree],
        task_spec: Optional[TaskSpec],
        submission_text: str,
        student_label: str,
    ) -> PromptPair:
        """
        Build the system and user prompts for one submission.

        Args:
            tree: Normalized rubric; selects rubric mode when given.
            task_spec: Answer key and conversion table for task mode.
            submission_text: Extracted text of the student's submission.
            student_label: Label the model must echo back.

        Returns:
            PromptPair without the conciseness directive.

        Raises:
            ValueError: If neither a rubric nor a TaskSpec is given.
        """
        if tree is not None:
            return PromptPair(
                self.RUBRIC_SYSTEM_PROMPT.format(scale=_SCALE_TEXT, student_label=student_label),
                self._rubric_user_prompt(tree, submission_text, student_label),
            )

        if task_spec is None:
            raise ValueError("Either a rubric tree or an answer key with a conversion table is required")

        return PromptPair(
            self.TASK_SYSTEM_PROMPT.format(student_label=student_label),
            self._task_user_prompt(task_spec, submission_text, student_label),
        )

    @classmethod
    def with_conciseness(cls, system_prompt: str) -> str:
        return system_prompt + cls.CONCISENESS_DIRECTIVE

    @staticmethod
    def _rubric_user_prompt(tree: RubricTree, submission_text: str, student_label: str) -> str:
        lines: list[str] = [
            "Grade the following submission against EXACTLY these criteria:",
            "",
        ]

        for section in tree.sections:
            lines.append(f"## {section.name} ({_format_weight(section.weight)}%)")
            lines.append("")
            for criterion in section.criteria:
                lines.append(f"### {criterion.name} ({_format_weight(criterion.weight)}%)")
                lines.append(criterion.description)
                lines.append("")

        lines.extend(
            [
                "---",
                "",
                f"STUDENT LABEL (must be used in the JSON): {student_label}",
                "",
                "SUBMISSION:",
                submission_text,
                "",
                "Grade the submission now and return the JSON.",
            ]
        )
        return "\n".join(lines)

    @staticmethod
    def _task_user_prompt(task_spec: TaskSpec, submission_text: str, student_label: str) -> str:
        return (
            f"ANSWER KEY:\n{task_spec.answer_key}\n\n"
            f"CONVERSION TABLE:\n{task_spec.conversion_table}\n\n"
            f"STUDENT LABEL (must be used in the JSON): {student_label}\n\n"
            f"SUBMISSION:\n{submission_text}\n\n"
            "Mark the submission now."
        )

    def build_followup(
        self,
        task: TaskScore,
        question: Optional[str] = None,
        submission_text: Optional[str] = None,
        has_image: bool = False,
    ) -> PromptPair:
        """
        Build a follow-up prompt about one graded task.

        Without a question the model explains what the answer is missing.
        With a question it answers it from the whole submission, and from
        the attached screenshot when ``has_image`` is set.
        """
        if not question:
            return PromptPair(
                self.EXPLAIN_SYSTEM_PROMPT,
                f"Task {task.number}: the student got "
                f"{_format_weight(task.awarded_points)}/{_format_weight(task.max_points)} points.\n\n"
                f"STUDENT ANSWER:\n{task.student_answer or 'Not answered'}\n\n"
                f"CORRECT ANSWER:\n{task.correct_answer}\n\n"
                "Explain what is missing.",
            )

        system_prompt = self.QUESTION_SYSTEM_PROMPT.format(
            number=task.number,
            image_note=(
                " The teacher attached a screenshot showing exactly what they mean."
                if has_image
                else ""
            ),
            image_ref=" and the attached screenshot" if has_image else "",
        )

        user_prompt = (
            f"THE STUDENT'S WHOLE DOCUMENT:\n{submission_text or 'The full document is not available.'}\n\n"
            f"TASK IN QUESTION (task {task.number}):\n"
            f"- Points awarded: {_format_weight(task.awarded_points)}/{_format_weight(task.max_points)}\n"
            f"- Student answer (extracted): {task.student_answer or 'Not extracted'}\n"
            f"- Correct answer: {task.correct_answer}\n"
            f"- Feedback: {task.feedback}\n\n"
            f"TEACHER'S QUESTION:\n{question}\n"
        )
        if has_image:
            user_prompt += "\nATTACHED SCREENSHOT: see the image below for context.\n"

        return PromptPair(system_prompt, user_prompt)


def _format_weight(value: Optional[float]) -> str:
    """Render 33.333 as '33.33' and 60.0 as '60'."""
    if value is None:
        return "?"
    return f"{value:.2f}".rstrip("0").rstrip(".")
