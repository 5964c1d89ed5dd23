"""Prompt templates for deliberation phases."""

ROLE_PREFIX = "You are acting as a {role}. Bring this perspective to all your responses.\n\n"

# --- Council (mesh) ---

GATHER_SYSTEM = (
    "You are a member of a deliberation council. Generate your best, "
    "independent response.\nFocus on: {focus}."
)

PLAN_SYSTEM = (
    "You've seen other council members' initial takes. Now plan your argument strategy.\n"
    "What will you emphasize? Where will you disagree? What's your angle?"
)
PLAN_USER = (
    "Other council members' initial responses:\n\n{others}\n\n"
    "Outline your argument strategy (bullet points, concise):"
)

FORMULATE_SYSTEM = (
    "Write your full, formal position statement. Be thorough and persuasive.\n"
    "You have your initial research, your argument plan, and awareness of others' positions."
)
FORMULATE_USER = (
    "Original question: {question}\n"
    "\n## Your initial research:\n{own_gather}\n"
    "\n## Your argument plan:\n{own_plan}\n"
    "\n## Others' initial takes (summary):\n{others}\n"
    "\nNow write your formal position:"
)
FORMULATE_SUMMARY_CHARS = 500

DEBATE_SYSTEM = (
    "You are in a council chamber with {count} other members. You've read ALL their positions.\n"
    "Critique ALL of them. Address each member by name.\n"
    "Challenge style: {style}.\n"
    "For each: attack the weakest link, question assumptions, offer counterexamples. "
    "Note genuine strengths.\n"
    'No strawmen. No vague "I disagree." Be sharp, be fair, be memorable.'
)
DEVILS_ADVOCATE_SYSTEM = (
    "You are the devil's advocate. Your job is to find every flaw, weakness, and "
    "counterargument to the emerging consensus. Challenge assumptions ruthlessly."
)
EXTRA_DEBATE_SYSTEM = (
    "This is round {round} of debate. Positions have not converged. Sharpen your critiques."
)
DEBATE_USER = (
    "Original question: {question}\n"
    "\n## Other council members' positions:\n{positions}\n"
    "\nCritique each position. Address each member directly:"
)

ADJUST_SYSTEM = (
    "The entire council has critiqued your position. Multiple members have weighed in.\n"
    "Read all their critiques carefully. Revise where valid, defend where you're right.\n"
    "Be honest: drop weak points, strengthen good ones. Show you've listened."
)
ADJUST_USER = (
    "Your original position:\n{position}\n"
    "\n## Critiques from the council:\n{critiques}\n"
    "\nYour revised position:"
)

REBUTTAL_SYSTEM = (
    "The council members have revised their positions after hearing critiques.\n"
    "Review their revisions. For each: did they address your concerns? What still stands?\n"
    "Brief rebuttals or concessions. Be concise, this is the final round before voting."
)
REBUTTAL_USER = (
    "Your original critiques:\n{critique}\n"
    "\n## Revised positions:\n{revisions}\n"
    "\nYour final rebuttals/concessions (address each member):"
)

VOTE_SYSTEM = (
    "Vote on the best position. Rank ALL positions from best to worst.\n"
    "Explain your ranking. Be fair: you CAN rank your own position #1 if it's "
    "genuinely best, but justify it."
)
VOTE_USER = (
    "Original question: {question}\n"
    "\nThere are {count} positions to rank ({labels}):\n"
    "\n{positions}\n"
    "\nYou MUST rank all positions. Provide your rankings as a JSON block AND as numbered lines.\n"
    "\nJSON format:\n```json\n{example}\n```\n"
    "\nAlso write as numbered lines:\n{lines}\n"
    "\nDo not ask clarifying questions. Do not skip any position. Rank them now."
)

# --- Other topologies ---

INDEPENDENT_SYSTEM = "You are an expert analyst. Provide your independent assessment."

HUB_SYSTEM = (
    "You are the hub analyst. Synthesize the following expert responses into a "
    "comprehensive answer.\n\n{responses}"
)
HUB_USER = "Synthesize all perspectives to answer: {question}"

TOURNAMENT_SYSTEM = "You are competing in a debate tournament. Present your strongest position."
CRITIQUE_SYSTEM = (
    "Your opponent has responded. Critique their position and strengthen yours.\n\n{opponent}"
)
CRITIQUE_USER = "Critique your opponent's response and defend your position on: {question}"
JUDGE_SYSTEM = "You are a judge. Review both debaters and declare a winner.\n\n{responses}"
JUDGE_USER = (
    "Which debater presented a stronger argument? Respond with the provider name "
    "and brief justification."
)

DECOMPOSE_SYSTEM = (
    "You are a question decomposer. Break the given question into exactly {count} "
    "independent sub-questions that, when answered together, fully address the "
    "original question. Output each sub-question on its own line, numbered 1-{count}."
)
MAP_SYSTEM = (
    "You are an expert. Answer the following sub-question thoroughly.\n\n"
    "Sub-question: {sub_question}"
)
REDUCE_SYSTEM = (
    "You have answers to all sub-questions. Synthesize them into a single, "
    "comprehensive response.\n\n{answers}"
)
REDUCE_USER = "Combine all sub-answers to fully address: {question}"

THESIS_SYSTEM = (
    "You are presenting a thesis. State your position clearly and comprehensively "
    "with supporting arguments."
)
CHALLENGE_SYSTEM = (
    "You are the challenger. Attack the thesis and any defenses. Find weaknesses, "
    "contradictions, and flawed reasoning.\n\n{previous}"
)
CHALLENGE_USER = "Challenge the arguments presented regarding: {question}"
DEFEND_SYSTEM = (
    "You are the defender. Defend the thesis against the challenges raised. Address "
    "each critique and strengthen the argument.\n\n{previous}"
)
DEFEND_USER = "Defend the thesis against the challenges regarding: {question}"

PIPELINE_FIRST_SYSTEM = (
    "You are the first in a chain of experts. Provide your best, most thorough answer."
)
PIPELINE_STEP_SYSTEM = (
    "Build on and improve the previous response. Add what's missing, correct errors, "
    "enhance clarity.\n\nPrevious work:\n{previous}"
)
PIPELINE_STEP_USER = "Improve and refine the response to: {question}"

PANEL_OPENING_SYSTEM = (
    "You are a panelist in an expert discussion. Provide your opening statement "
    "with your perspective and key arguments."
)
PANEL_QUESTIONS_SYSTEM = (
    "You are the moderator. You have read all panelist opening statements. Generate "
    "a targeted follow-up question for each panelist to deepen the discussion. "
    "Format: one question per panelist, labeled with their name.\n\n{statements}"
)
PANEL_QUESTIONS_USER = (
    "Based on the opening statements, generate follow-up questions for each panelist "
    "regarding: {question}"
)
PANEL_ANSWER_SYSTEM = (
    "The moderator has posed follow-up questions. Find and answer the question "
    "directed at you.\n\nModerator's questions:\n{questions}"
)
PANEL_ANSWER_USER = "Answer the moderator's follow-up question about: {question}"
PANEL_SYNTHESIS_SYSTEM = (
    "You are the moderator. You have seen all opening statements and follow-up "
    "responses. Produce a comprehensive synthesis that captures the key insights, "
    "areas of agreement, and remaining tensions.\n\n{responses}"
)
PANEL_SYNTHESIS_USER = "Synthesize the full panel discussion on: {question}"

# --- Synthesis ---

COUNCIL_SYNTHESIS_SYSTEM = (
    "You are the neutral synthesizer: you did NOT win this debate. Your job is "
    "impartial integration.\n"
    "The council debated, critiqued, revised, and voted. Merge the best thinking "
    "into a definitive answer.\n"
    "Start with the winning position, integrate valuable insights from others (cite who), "
    "resolve conflicts.\n"
    "The synthesis must be BETTER than any individual response."
)
TOPOLOGY_SYNTHESIS_SYSTEM = (
    "You are the synthesizer for a {description}. Merge the best thinking into a "
    "definitive answer."
)
VOTE_RANKINGS_NOTE = (
    "\n\nVote rankings: {rankings}\n"
    "Weight contributions by vote score. The winner's arguments should receive more "
    "emphasis. Last-place provider's unique contributions should be flagged as "
    "lower-confidence minority positions."
)
SYNTHESIS_USER = (
    "Original question: {question}\n"
    "\n## Final Positions:\n{positions}\n"
    "{extra}"
    "\nProduce:\n## Synthesis\n[Best answer]\n\n"
    "## Minority Report\n[Dissenting views worth preserving]\n\n"
    "## Scores\nConsensus: [0.0-1.0]\nConfidence: [0.0-1.0]"
)

WHAT_WOULD_CHANGE_SYSTEM = (
    "You are a critical thinker examining a council's conclusion for potential "
    "weaknesses and conditions under which it should be revised."
)
WHAT_WOULD_CHANGE_USER = (
    "The council reached the following conclusion:\n\n{conclusion}\n"
    "\nGiven the council's conclusion above, what specific evidence, arguments, or "
    "scenarios would cause you to overturn or significantly revise this conclusion? "
    "Be concrete and specific."
)
