"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Agent Fleet</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --running: #58a6ff; --done: #3fb950; --failed: #f85149; --cancelled: #d29922;
    --link: #58a6ff;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1040px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header select { background: var(--surface); color: var(--text); border: 1px solid var(--border);
                  padding: 6px 12px; border-radius: 6px; font-size: 14px; cursor: pointer; }
  .run-info { background: var(--surface); border: 1px solid var(--border);
              border-radius: 8px; padding: 16px; margin-bottom: 20px; font-size: 13px; }
  .run-info h2 { font-size: 16px; margin-bottom: 8px; }
  code { background: var(--bg); padding: 1px 5px; border-radius: 3px; font-size: 12px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.running { background: rgba(88,166,255,0.15); color: var(--running); }
  .badge.done, .badge.completed, .badge.merged { background: rgba(63,185,80,0.15); color: var(--done); }
  .badge.failed { background: rgba(248,81,73,0.15); color: var(--failed); }
  .badge.cancelled { background: rgba(210,153,34,0.15); color: var(--cancelled); }
  table { width: 100%; border-collapse: collapse; font-size: 13px; margin-bottom: 20px; }
  th, td { text-align: left; padding: 6px 8px; border-bottom: 1px solid var(--border); vertical-align: top; }
  th { color: var(--text-muted); font-weight: 600; }
  .error { color: var(--failed); font-size: 12px; }
  .events { font-size: 12px; color: var(--text-muted); font-family: monospace; }
  a { color: var(--link); text-decoration: none; }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Agent Fleet</h1>
    <select id="run-picker"><option value="">Loading...</option></select>
  </header>
  <div id="content">
    <div class="empty"><h3>No run selected</h3></div>
  </div>
</div>

<script>
let currentRun = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadRuns() {
  const picker = document.getElementById('run-picker');
  const runs = await fetchJSON('/api/runs');
  if (!runs || runs.length === 0) {
    picker.innerHTML = '<option value="">No runs</option>';
    return;
  }
  picker.innerHTML = runs.map(r =>
    `<option value="${r.id}">${r.id} (${r.status}, ${r.started_at || ''})</option>`).join('');
  picker.onchange = () => { currentRun = picker.value; loadRun(currentRun); };
  if (!currentRun) currentRun = runs[0].id;
  picker.value = currentRun;
  loadRun(currentRun);
}

async function loadRun(runId) {
  const content = document.getElementById('content');
  const [run, jobs, events] = await Promise.all([
    fetchJSON(`/api/runs/${runId}`),
    fetchJSON(`/api/runs/${runId}/jobs`),
    fetchJSON(`/api/runs/${runId}/events`),
  ]);
  if (!run) { content.innerHTML = '<div class="empty"><h3>Run not found</h3></div>'; return; }

  let html = `<div class="run-info">
    <h2>Run ${esc(run.id)} <span class="badge ${run.status}">${esc(run.status)}</span></h2>
    Repo: <code>${esc(run.repo_path)}</code> &middot; Base: <code>${esc(run.base_branch)}</code>
    &middot; Engine: <code>${esc(run.engine)}</code> &middot; Source: <code>${esc(run.source)}</code><br>
    Done: ${run.tasks_done} &middot; Failed: ${run.tasks_failed}
    &middot; Tokens: ${run.input_tokens} in / ${run.output_tokens} out
  </div>`;

  if (run.integrations && run.integrations.length) {
    html += '<table><tr><th>Integration branch</th><th>Group</th><th>Status</th><th>Merged</th></tr>';
    for (const ib of run.integrations) {
      html += `<tr><td><code>${esc(ib.name)}</code></td><td>${ib.group_number}</td>
        <td><span class="badge ${ib.status}">${esc(ib.status)}</span></td>
        <td>${ib.merged_branches.map(b => `<code>${esc(b)}</code>`).join(' ')}</td></tr>`;
    }
    html += '</table>';
  }

  html += '<table><tr><th>#</th><th>Task</th><th>Group</th><th>Status</th><th>Branch</th><th>Commits</th></tr>';
  for (const job of (jobs || [])) {
    const pr = job.pr_url ? ` <a href="${esc(job.pr_url)}" target="_blank" rel="noopener">PR</a>` : '';
    const err = job.error ? `<div class="error">${esc(job.error)}</div>` : '';
    html += `<tr><td>${job.agent_number}</td><td>${esc(job.task_title)}${err}</td>
      <td>${job.group_number}</td><td><span class="badge ${job.status}">${esc(job.status)}</span></td>
      <td><code>${esc(job.branch_name)}</code>${pr}</td><td>${job.commit_count}</td></tr>`;
  }
  html += '</table>';

  html += '<div class="events">' + (events || []).map(e =>
    `<div>${esc(e.created_at)} ${esc(e.event_type)} ${esc(e.message)}</div>`).join('') + '</div>';
  content.innerHTML = html;
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

loadRuns();
setInterval(() => { if (currentRun) loadRun(currentRun); }, 5000);
</script>
</body>
</html>"""
