from querypilot.ai_feature.models import AgentGoal

POSTGRES_RULES = """## POSTGRESQL SYNTAX RULES (follow exactly)
1. Quote identifiers with double quotes: "table_name", "column_name"
2. String literals use single quotes: 'value'
3. JSON/JSONB access:
   - "column"->'key' for a JSON value
   - "column"->>'key' for text
   - "column"#>'{path,to,key}' and "column"#>>'{path,to,key}' for paths
   - Cast when needed: ("column"->>'number')::integer
4. Arrays: ARRAY['a','b'] or '{a,b}'::text[]
5. Date/time: INTERVAL '1 day', DATE 'YYYY-MM-DD', NOW()
6. NULL checks: IS NULL / IS NOT NULL, never = NULL
7. LIMIT goes last, after ORDER BY
8. GROUP BY must list every non-aggregated SELECT column
9. Case-insensitive search: ILIKE or LOWER("column")

## COMMON MISTAKES TO AVOID
- No backticks for identifiers, no TOP N, no + for string concat (use ||)
- No GETDATE(), LEN() or ISNULL(): use NOW(), LENGTH() and COALESCE()
- Cast JSONB text before comparing it with numbers or dates"""


def _task_section(goal: AgentGoal) -> str:
    if goal.is_follow_up:
        return (
            f'The user is giving feedback on a previous query: "{goal.prompt}"\n\n'
            "This is a follow-up request. Modify or improve the existing query "
            "based on the feedback, and say briefly what you will change."
        )
    return f'Create a query for: "{goal.prompt}"'


def build_system_prompt(goal: AgentGoal) -> str:
    """System prompt for one agent run."""
    sections = [
        "You are an expert PostgreSQL query builder. Help users create and refine SQL queries.",
        f"## YOUR TASK\n{_task_section(goal)}",
    ]
    if goal.previous_context:
        sections.append(f"## PREVIOUS CONTEXT\n{goal.previous_context}")

    sections.extend(
        [
            "## COMMUNICATION STYLE\n"
            "- Be concise; keep explanations to one or two sentences per point\n"
            "- Use plain text, no markdown formatting",
            "## SEQUENTIAL EXECUTION\n"
            "- Call one tool at a time and wait for its result\n"
            "- When execute_query succeeds, use that result instead of re-running variations",
            "## TOOLS\n"
            "1. get_table_schema - database structure (use first if needed)\n"
            "2. get_json_keys - explore JSON column structure\n"
            "3. execute_query - test queries (always give a title and description)\n"
            "4. validate_query - check syntax without running\n"
            "5. manage_todo - plan and track work on complex requests\n"
            "6. update_query_ui - finalize and present the query (always give a summary)",
            POSTGRES_RULES,
            "## EFFICIENCY\n"
            "- Only call get_table_schema if you don't already know the schema\n"
            "- Don't execute the same query twice\n"
            "- For simple modifications validate_query is often enough\n"
            "- Aim to finish in 3-5 tool calls",
            "## RULES\n"
            "- Only SELECT queries are allowed\n"
            "- Test complex queries before finalizing\n"
            "- If columns come back NULL, check field names with get_json_keys",
        ]
    )

    finishing = (
        "## FINISHING\nCall update_query_ui with:\n"
        "- The final SQL query\n"
        "- A brief explanation of what it does"
    )
    if goal.is_follow_up:
        finishing += "\n- What you changed from the previous query"
    sections.append(finishing)

    return "\n\n".join(sections)


def build_user_message(goal: AgentGoal) -> str:
    """First user turn; a follow-up carries the current query inline."""
    if goal.previous_sql:
        return (
            f"Current SQL query:\n```sql\n{goal.previous_sql}\n```\n\n"
            f"User request: {goal.prompt}"
        )
    return goal.prompt
